"""
Shared fixtures: a file-backed SQLite database per test, a ServiceContext
wired with scripted fakes, and an in-process HTTP client.
"""

import asyncio
import json
import re
from typing import Optional

import httpx
import pytest

from companion.core.config import Settings
from companion.core.database import create_engine, init_db, make_session_factory
from companion.core.errors import DependencyUnavailable, GenerationError
from companion.core.flags import FeatureFlags
from companion.orchestrator.extraction import KeywordMemoryExtractor
from companion.orchestrator.finalizer import SUMMARY_SYSTEM
from companion.orchestrator.locks import TurnLockRegistry
from companion.orchestrator.planner import PLANNER_SYSTEM
from companion.services.context import ServiceContext
from companion.services.embeddings import l2_normalize
from companion.services.voice import SpeechResult, Transcript

DEFAULT_PLAN = json.dumps({
    "intent": "ask",
    "tone": "warm",
    "brevity": "short",
    "empathy": "medium",
    "beats": ["answer", "followup"],
    "avoid": [],
    "keywords": [],
    "reasoning": "friendly greeting",
})

VOCAB = ("pizza", "food", "dog", "pet", "music", "guitar", "travel", "paris", "work", "job")


# ── Fakes ────────────────────────────────────────────────────────────

class FakeLLM:
    """Scripted generation backend."""

    def __init__(self):
        self.fragments = ["Hello", " there", "!"]
        self.fail_after: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None
        self.hang_after: Optional[int] = None
        self.plan_response = DEFAULT_PLAN
        self.summary_response = "They chatted about food and music."
        self.simple_error: Optional[Exception] = None
        self.stream_calls: list[list[dict]] = []
        self.simple_calls: list[dict] = []
        self.started = asyncio.Event()
        self.cancelled = False

    async def stream(self, messages, **kwargs):
        self.stream_calls.append(messages)
        self.started.set()
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i >= self.fail_after:
                    raise GenerationError("Generation backend failed mid-stream",
                                          error_code="stream_interrupted")
                if self.gate is not None:
                    await self.gate.wait()
                if self.hang_after is not None and i >= self.hang_after:
                    await asyncio.Event().wait()  # upstream stalls until cancelled
                yield fragment
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def chat_simple(self, prompt, system="", **kwargs):
        self.simple_calls.append({"prompt": prompt, "system": system, **kwargs})
        if self.simple_error is not None:
            raise self.simple_error
        if system == PLANNER_SYSTEM:
            return self.plan_response
        if system == SUMMARY_SYSTEM:
            return self.summary_response
        return ""

    def calls_for(self, system: str) -> list[dict]:
        return [c for c in self.simple_calls if c["system"] == system]


class FakeEmbedder:
    """Bag-of-words vectors over a tiny vocabulary."""

    def __init__(self, available: bool = True):
        self._available = available
        self.fail = False
        self.calls = 0

    @property
    def available(self) -> bool:
        return self._available

    async def embed(self, texts):
        self.calls += 1
        if self.fail:
            raise DependencyUnavailable("Embedding backend unavailable")
        return [self.vector(t) for t in texts]

    @staticmethod
    def vector(text: str) -> list[float]:
        vec = [0.0] * len(VOCAB)
        for word in re.findall(r"\w+", text.lower()):
            if word in VOCAB:
                vec[VOCAB.index(word)] += 1.0
        return l2_normalize(vec)


class FakeClassifier:
    def __init__(self):
        self.toxic_words: set[str] = set()
        self.calls = 0

    async def is_toxic(self, text, threshold=None):
        self.calls += 1
        lowered = text.lower()
        return any(w in lowered for w in self.toxic_words)


class FakeVoice:
    def __init__(self, available: bool = True):
        self.available = available
        self.fail = False
        self.calls: list[str] = []

    async def synthesize(self, text, voice=None, speed=1.0, pitch=1.0, style=None):
        self.calls.append(text)
        if self.fail:
            raise DependencyUnavailable("Voice synthesis failed")
        return SpeechResult(audio=b"ID3audio", duration=round(len(text) * 0.05, 2))

    async def stream_synthesis(self, text, voice=None):
        self.calls.append(text)
        for chunk in (b"ID3", b"audio", b"bytes"):
            yield chunk


class FakeTranscriber:
    def __init__(self, available: bool = True):
        self.available = available
        self.calls: list[tuple[int, str]] = []

    async def transcribe(self, audio, language="en", content_type="audio/wav"):
        self.calls.append((len(audio), language))
        return Transcript(text="hello from audio", confidence=0.93)


# ── Settings ─────────────────────────────────────────────────────────

def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "sqlite+aiosqlite://",
        "LLM_API_KEY": "test-key",
        "SUMMARY_REFRESH_INTERVAL": 6,
        "TURN_LOCK_TIMEOUT": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_flags(**overrides) -> FeatureFlags:
    values = {"FF_USE_REDIS": False, "FF_USE_PLANNER": True}
    values.update(overrides)
    return FeatureFlags(**values)


def parse_sse(body: str) -> list[dict]:
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'companion.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def flags():
    return make_flags()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def voice():
    return FakeVoice()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def services(settings, flags, session_factory, llm, embedder, classifier, voice, transcriber):
    return ServiceContext(
        settings=settings,
        flags=flags,
        session_factory=session_factory,
        llm=llm,
        embedder=embedder,
        classifier=classifier,
        voice=voice,
        transcriber=transcriber,
        extractor=KeywordMemoryExtractor(),
        locks=TurnLockRegistry(timeout=settings.turn_lock_timeout),
    )


@pytest.fixture
async def db(services):
    async with services.session() as session:
        yield session


@pytest.fixture
async def client(services):
    from companion.factory import create_app

    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
