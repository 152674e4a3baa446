import asyncio
import json

from companion.api.voice import MAX_AUDIO_SIZE
from companion.orchestrator.state import get_recent_messages

from .conftest import parse_sse


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Chat ─────────────────────────────────────────────────────────────

async def test_chat_stream_sse(client):
    resp = await client.post("/v1/chat/stream", json={"userId": "u1", "text": "Hi there!"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(resp.text)
    assert events[0] == {"type": "token", "content": "Hello", "is_complete": False}
    assert events[-2] == {"type": "token", "content": "", "is_complete": True}
    assert events[-1]["type"] == "complete"
    assert events[-1]["message"] == "Hello there!"


async def test_chat_stream_snake_case_and_history(client):
    resp = await client.post("/v1/chat/stream", json={
        "user_id": "u1", "convo_id": "c-api", "text": "Hi there!", "voice_enabled": False,
    })
    assert parse_sse(resp.text)[-1]["convo_id"] == "c-api"

    history = await client.get("/v1/chat/c-api/history")
    assert history.status_code == 200
    body = history.json()
    assert [(m["role"], m["content"]) for m in body["messages"]] == [
        ("user", "Hi there!"),
        ("assistant", "Hello there!"),
    ]
    assert body["messages"][0]["sequence_number"] < body["messages"][1]["sequence_number"]


async def test_chat_stream_with_voice(client):
    resp = await client.post("/v1/chat/stream",
                             json={"userId": "u1", "text": "Hi there!", "voiceEnabled": True})
    events = parse_sse(resp.text)
    assert [e["type"] for e in events][-2:] == ["audio", "complete"]


async def test_policy_rejection_is_400(client, llm):
    resp = await client.post("/v1/chat/stream", json={"userId": "u1", "text": "xxx please"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Request violates content guidelines.", "reason": "content policy"}
    assert llm.stream_calls == []


async def test_empty_message_is_422(client):
    resp = await client.post("/v1/chat/stream", json={"userId": "u1", "text": "  "})
    assert resp.status_code == 422
    assert resp.json()["kind"] == "input"


async def test_generation_failure_streams_error_event(client, llm):
    llm.fail_after = 2
    resp = await client.post("/v1/chat/stream", json={"userId": "u1", "text": "Hi there!"})

    assert resp.status_code == 200
    events = parse_sse(resp.text)
    assert events[-1]["type"] == "error"
    assert events[-1]["kind"] == "generation"


async def test_client_disconnect_mid_stream_keeps_user_message(services, llm):
    from companion.factory import create_app

    app = create_app(services=services)
    llm.hang_after = 1
    body = json.dumps({"userId": "u1", "convoId": "c-drop", "text": "Tell me a story"}).encode()
    first_token = asyncio.Event()
    sent = []
    requested = False

    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/chat/stream",
        "raw_path": b"/v1/chat/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"test"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("test", 80),
    }

    async def receive():
        nonlocal requested
        if not requested:
            requested = True
            return {"type": "http.request", "body": body, "more_body": False}
        await first_token.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)
        if message["type"] == "http.response.body" and b"Hello" in message.get("body", b""):
            first_token.set()

    await asyncio.wait_for(app(scope, receive, send), timeout=5)
    await services.drain()

    assert sent[0]["status"] == 200
    assert llm.cancelled
    async with services.session() as db:
        messages = await get_recent_messages(db, "c-drop")
    assert [(m.role, m.content) for m in messages] == [("user", "Tell me a story")]
    assert not services.locks.is_locked("c-drop")


async def test_history_unknown_conversation(client):
    resp = await client.get("/v1/chat/nope/history")
    assert resp.status_code == 404


# ── Profile ──────────────────────────────────────────────────────────

async def test_profile_lifecycle(client):
    assert (await client.get("/v1/profile/u9")).status_code == 404

    resp = await client.put("/v1/profile/u9", json={
        "name": "Sam",
        "preferences": {"tea": "green"},
        "communicationStyle": "casual",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["name"] == "Sam"
    assert body["relationship_level"] == "new"
    assert body["communication_style"] == "casual"

    resp = await client.put("/v1/profile/u9", json={
        "preferences": {"music": "jazz"},
        "relationship_level": "friend",
    })
    body = resp.json()
    assert body["name"] == "Sam"
    assert body["preferences"] == {"tea": "green", "music": "jazz"}
    assert body["relationship_level"] == "friend"

    fetched = (await client.get("/v1/profile/u9")).json()
    assert fetched["preferences"] == {"tea": "green", "music": "jazz"}


async def test_profile_rejects_unknown_relationship_level(client):
    resp = await client.put("/v1/profile/u9", json={"relationshipLevel": "soulmate"})
    assert resp.status_code == 422


# ── Memories ─────────────────────────────────────────────────────────

async def test_memory_create_and_list(client):
    resp = await client.post("/v1/memories", json={
        "userId": "u1", "content": "Prefers green tea", "kind": "preference",
        "importance": 0.7, "tags": ["drinks"],
    })
    assert resp.status_code == 201
    created = resp.json()
    assert created["kind"] == "preference"
    assert created["tags"] == ["drinks"]

    await client.post("/v1/memories", json={"user_id": "u1", "content": "Went to Paris", "kind": "moment"})

    listed = (await client.get("/v1/memories/u1")).json()
    assert [m["content"] for m in listed] == ["Went to Paris", "Prefers green tea"]

    only_prefs = (await client.get("/v1/memories/u1", params={"kind": "preference"})).json()
    assert [m["content"] for m in only_prefs] == ["Prefers green tea"]
    assert only_prefs[0]["importance"] == 0.7

    limited = (await client.get("/v1/memories/u1", params={"limit": 1})).json()
    assert len(limited) == 1


async def test_memory_importance_clamped(client):
    resp = await client.post("/v1/memories", json={"userId": "u1", "content": "x is y", "importance": 5})
    assert resp.json()["importance"] == 1.0


async def test_memory_rejects_empty_content(client):
    resp = await client.post("/v1/memories", json={"userId": "u1", "content": "   "})
    assert resp.status_code == 422


# ── Voice ────────────────────────────────────────────────────────────

async def test_tts(client):
    resp = await client.post("/v1/voice/tts", json={"text": "Hello there"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["audio_url"].startswith("data:audio/mpeg;base64,")
    assert body["duration"] > 0


async def test_tts_stream(client):
    resp = await client.post("/v1/voice/tts/stream", json={"text": "Hello there"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert resp.content == b"ID3audiobytes"


async def test_tts_unavailable(client, voice):
    voice.available = False
    resp = await client.post("/v1/voice/tts", json={"text": "Hello there"})
    assert resp.status_code == 503


async def test_transcribe(client, transcriber):
    resp = await client.post(
        "/v1/voice/transcribe",
        files={"audio": ("clip.wav", b"RIFF0000WAVE", "audio/wav")},
        data={"language": "es"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"text": "hello from audio", "confidence": 0.93}
    assert transcriber.calls == [(12, "es")]


async def test_transcribe_rejects_non_audio(client):
    resp = await client.post(
        "/v1/voice/transcribe",
        files={"audio": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 415


async def test_transcribe_rejects_large_files(client, transcriber):
    resp = await client.post(
        "/v1/voice/transcribe",
        files={"audio": ("long.mp3", b"\0" * (MAX_AUDIO_SIZE + 1), "audio/mpeg")},
    )
    assert resp.status_code == 413
    assert transcriber.calls == []
