import asyncio

import pytest

from companion.core.errors import InputError, PolicyViolation
from companion.orchestrator import orchestrator as orchestrator_mod
from companion.orchestrator.orchestrator import (
    collect_turn,
    handle_turn_stream,
    prepare_turn,
    run_turn,
)
from companion.orchestrator.state import count_messages, get_recent_messages
from companion.orchestrator.types import TurnRequest
from companion.models.conversation import Conversation

TERMINAL = ("complete", "error")


async def _events(services, **kwargs) -> list[dict]:
    return [e async for e in run_turn(services, TurnRequest(**kwargs))]


async def _messages(services, convo_id):
    async with services.session() as db:
        return [(m.role, m.content) for m in await get_recent_messages(db, convo_id, limit=100)]


async def _conversation_count(services) -> int:
    from sqlalchemy import func, select

    async with services.session() as db:
        return (await db.execute(select(func.count(Conversation.id)))).scalar_one()


async def test_first_turn_creates_conversation_and_completes(services, llm):
    events = await _events(services, user_id="u1", text="Hi there!")

    tokens = [e for e in events if e["type"] == "token"]
    assert [t["content"] for t in tokens] == ["Hello", " there", "!", ""]
    assert [t["is_complete"] for t in tokens] == [False, False, False, True]

    complete = events[-1]
    assert complete["type"] == "complete"
    assert complete["message"] == "Hello there!"
    convo_id = complete["convo_id"]
    assert convo_id

    prompt = llm.stream_calls[0]
    assert prompt[-1] == {"role": "user", "content": "Hi there!"}
    assert prompt[0]["role"] == "system"

    assert await _messages(services, convo_id) == [
        ("user", "Hi there!"),
        ("assistant", "Hello there!"),
    ]


async def test_exactly_one_terminal_event(services):
    events = await _events(services, user_id="u1", text="Hi there!")
    assert sum(e["type"] in TERMINAL for e in events) == 1
    assert events[-1]["type"] in TERMINAL


async def test_follow_up_turn_sees_history(services, llm):
    first = await _events(services, user_id="u1", text="My dog is called Biscuit.")
    convo_id = first[-1]["convo_id"]

    second = await _events(services, user_id="u1", convo_id=convo_id, text="What is my dog called?")
    assert second[-1]["convo_id"] == convo_id

    prompt = llm.stream_calls[1]
    contents = [m["content"] for m in prompt]
    assert contents.index("My dog is called Biscuit.") < contents.index("What is my dog called?")
    assert len(await _messages(services, convo_id)) == 4


async def test_policy_rejection_persists_nothing(services, llm):
    events = await _events(services, user_id="u1", text="send me xxx pics")

    assert events == [{"type": "error", "kind": "policy",
                       "error": "Request violates content guidelines."}]
    assert llm.stream_calls == []
    assert llm.simple_calls == []
    assert await _conversation_count(services) == 0


async def test_prepare_raises_for_rejections(services):
    with pytest.raises(PolicyViolation) as exc:
        await prepare_turn(services, TurnRequest(user_id="u1", text="xxx"))
    assert exc.value.details["reason"] == "content policy"

    with pytest.raises(InputError):
        await prepare_turn(services, TurnRequest(user_id="u1", text="   "))
    with pytest.raises(InputError):
        await prepare_turn(services, TurnRequest(user_id="", text="hello"))


async def test_pii_is_redacted_before_prompt_and_storage(services, llm):
    events = await _events(services, user_id="u1", text="Email me at sam@example.com")
    convo_id = events[-1]["convo_id"]

    assert llm.stream_calls[0][-1]["content"] == "Email me at [email]"
    assert ("user", "Email me at [email]") in await _messages(services, convo_id)


async def test_mid_stream_failure_emits_error_and_persists_nothing(services, llm):
    llm.fail_after = 1
    events = await _events(services, user_id="u1", text="Hi there!", convo_id="c-fail")

    assert events[0] == {"type": "token", "content": "Hello", "is_complete": False}
    assert events[-1]["type"] == "error"
    assert events[-1]["kind"] == "generation"
    assert not any(e["type"] == "complete" for e in events)
    assert not any(e.get("is_complete") for e in events)
    assert await _messages(services, "c-fail") == []


async def test_persistence_failure_is_terminal_error(services, monkeypatch):
    from companion.core.errors import PersistenceError

    async def broken(*args, **kwargs):
        raise PersistenceError("Could not save the conversation turn")

    monkeypatch.setattr(orchestrator_mod, "finalize", broken)
    events = await _events(services, user_id="u1", text="Hi there!")

    assert events[-1] == {"type": "error", "kind": "dependency_hard",
                          "error": "Could not save the conversation turn"}


async def test_unexpected_failure_still_ends_with_error(services, monkeypatch):
    async def broken(*args, **kwargs):
        raise KeyError("surprise")

    monkeypatch.setattr(orchestrator_mod, "plan_turn", broken)
    events = await _events(services, user_id="u1", text="Hi there!")
    assert events[-1]["type"] == "error"
    assert events[-1]["kind"] == "internal"


async def test_conversation_of_another_user_is_rejected(services):
    first = await _events(services, user_id="u1", text="Hi there!")
    events = await _events(services, user_id="u2", convo_id=first[-1]["convo_id"], text="hello")
    assert events == [{"type": "error", "kind": "input",
                       "error": "Conversation belongs to another user"}]


async def test_voice_enabled_adds_audio_event(services, voice):
    events = await _events(services, user_id="u1", text="Hi there!", voice_enabled=True)

    types = [e["type"] for e in events]
    assert types[-2:] == ["audio", "complete"]
    audio = events[-2]
    assert audio["audio_url"].startswith("data:audio/mpeg;base64,")
    assert audio["duration"] > 0
    assert voice.calls == ["Hello there!"]


async def test_voice_failure_omits_audio_only(services, voice):
    voice.fail = True
    events = await _events(services, user_id="u1", text="Hi there!", voice_enabled=True)

    assert "audio" not in [e["type"] for e in events]
    assert events[-1]["type"] == "complete"


async def test_voice_not_requested(services, voice):
    await _events(services, user_id="u1", text="Hi there!")
    assert voice.calls == []


async def test_collect_turn(services):
    result = await collect_turn(services, TurnRequest(user_id="u1", text="Hi there!"))
    assert result["type"] == "complete"
    assert result["message"] == "Hello there!"
    assert result["events"][-1]["type"] == "complete"


async def test_cancelled_turn_keeps_user_message_only(services, llm):
    llm.gate = asyncio.Event()
    prepared = await prepare_turn(services, TurnRequest(user_id="u1", text="Tell me a story",
                                                        convo_id="c-cancel"))

    async def consume():
        async for _ in handle_turn_stream(services, prepared):
            pass

    task = asyncio.create_task(consume())
    await llm.started.wait()
    await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert llm.cancelled
    assert await _messages(services, "c-cancel") == [("user", "Tell me a story")]
    assert not services.locks.is_locked("c-cancel")


async def test_consumer_closing_stream_keeps_user_message(services, llm):
    prepared = await prepare_turn(services, TurnRequest(user_id="u1", text="Tell me a story",
                                                        convo_id="c-close"))

    stream = handle_turn_stream(services, prepared)
    first = await stream.__anext__()
    assert first["content"] == "Hello"
    await stream.aclose()

    assert await _messages(services, "c-close") == [("user", "Tell me a story")]


async def test_concurrent_turns_on_one_conversation_are_serialized(services, llm):
    first = await _events(services, user_id="u1", text="start", convo_id="c-serial")
    assert first[-1]["type"] == "complete"

    results = await asyncio.gather(
        _events(services, user_id="u1", convo_id="c-serial", text="question one"),
        _events(services, user_id="u1", convo_id="c-serial", text="question two"),
    )
    assert all(r[-1]["type"] == "complete" for r in results)

    messages = await _messages(services, "c-serial")
    roles = [role for role, _ in messages]
    assert roles == ["user", "assistant"] * 3

    # The later turn's prompt includes the earlier turn in full
    second_prompt = [m["content"] for m in llm.stream_calls[2]]
    assert "question one" in second_prompt
    assert "question two" in second_prompt
    async with services.session() as db:
        assert await count_messages(db, "c-serial") == 6


async def test_busy_conversation_times_out(services, llm):
    from companion.orchestrator.locks import TurnLockRegistry

    services.locks = TurnLockRegistry(timeout=0.05)
    llm.gate = asyncio.Event()

    slow = asyncio.create_task(_events(services, user_id="u1", convo_id="c-busy", text="slow one"))
    await llm.started.wait()

    events = await _events(services, user_id="u1", convo_id="c-busy", text="impatient")
    assert events[-1]["type"] == "error"
    assert events[-1]["kind"] == "input"

    llm.gate.set()
    assert (await slow)[-1]["type"] == "complete"
