"""
Service context — every collaborator a turn needs, passed explicitly.

Built once at startup and stored on app.state. Tests build their own with fakes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Optional, TypeVar

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.database import get_session_factory
from ..core.flags import FeatureFlags, get_flags
from ..core.redis import get_redis
from ..orchestrator.extraction import KeywordMemoryExtractor, MemoryExtractor
from ..orchestrator.locks import TurnLockRegistry
from .embeddings import EmbeddingClient
from .llm import LLMClient, make_http_client
from .moderation import ToxicityClassifier
from .voice import TranscriptionClient, VoiceClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ServiceContext:
    settings: Settings
    flags: FeatureFlags
    session_factory: async_sessionmaker[AsyncSession]
    llm: LLMClient
    embedder: EmbeddingClient
    classifier: ToxicityClassifier
    voice: VoiceClient
    transcriber: TranscriptionClient
    extractor: MemoryExtractor
    locks: TurnLockRegistry
    http: Optional[httpx.AsyncClient] = None
    _background: set = field(default_factory=set, init=False, repr=False)

    def spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        """
        Run `coro` as a task that outlives the caller's cancellation.
        Kept referenced until done so it is not garbage-collected mid-write.
        """
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for spawned work (e.g. writes of cancelled turns) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A unit of work: committed on success, rolled back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def aclose(self) -> None:
        if self._background:
            logger.info("Waiting for %d background writes", len(self._background))
            await self.drain()
        if self.http is not None and not self.http.is_closed:
            await self.http.aclose()
            logger.info("HTTP client closed")


def build_services(
    settings: Optional[Settings] = None,
    flags: Optional[FeatureFlags] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ServiceContext:
    settings = settings or get_settings()
    flags = flags or get_flags()
    http = make_http_client()

    return ServiceContext(
        settings=settings,
        flags=flags,
        session_factory=session_factory or get_session_factory(),
        llm=LLMClient(settings, flags, http),
        embedder=EmbeddingClient(settings, flags, http),
        classifier=ToxicityClassifier(settings, flags, http),
        voice=VoiceClient(settings, flags, http),
        transcriber=TranscriptionClient(settings, flags, http),
        extractor=KeywordMemoryExtractor(),
        locks=TurnLockRegistry(
            timeout=settings.turn_lock_timeout,
            redis_factory=get_redis if flags.use_redis else None,
        ),
        http=http,
    )
