"""
Generation — stream a reply from the backend through a cancellable channel.

A producer task drains the backend stream into a bounded queue; the consumer
iterates `Fragment`s until one with `final=True`. Closing the channel cancels
the producer, which exits the backend's HTTP stream and releases the upstream
connection instead of draining tokens nobody will read.

Backend failure mid-stream surfaces as GenerationError on the consumer side.
Partial output is never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from ..core.errors import DependencyUnavailable, GenerationError
from ..services.context import ServiceContext
from ..services.voice import SpeechResult

logger = logging.getLogger(__name__)

_DONE = object()


@dataclass(frozen=True)
class Fragment:
    text: str = ""
    final: bool = False  # True exactly once, after the last text fragment


@dataclass(frozen=True)
class _Failure:
    error: BaseException


class TokenChannel:
    """Single-use async iterator over generated fragments."""

    def __init__(self, source: Callable[[], AsyncIterator[str]], maxsize: int = 64):
        self._source = source
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self.fragments = 0

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def producer_done(self) -> bool:
        return self._task is not None and self._task.done()

    async def _produce(self) -> None:
        try:
            async for text in self._source():
                if text:
                    await self._queue.put(text)
            await self._queue.put(_DONE)
        except asyncio.CancelledError:
            logger.info("Generation producer cancelled")
            raise
        except Exception as e:
            await self._queue.put(_Failure(e))

    def __aiter__(self) -> "TokenChannel":
        return self

    async def __anext__(self) -> Fragment:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

        item = await self._queue.get()
        if item is _DONE:
            self._finished = True
            return Fragment(final=True)
        if isinstance(item, _Failure):
            self._finished = True
            if isinstance(item.error, GenerationError):
                raise item.error
            raise GenerationError(
                "Generation failed", error_code="generation_failed"
            ) from item.error

        self.fragments += 1
        return Fragment(text=item)

    def cancel(self) -> None:
        """Stop consuming and cancel the producer without waiting for it to unwind."""
        self._finished = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel the producer and wait until the upstream stream is closed."""
        self.cancel()
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)


def generate(services: ServiceContext, messages: list[dict]) -> TokenChannel:
    """Lazy fragment sequence for `messages`. Nothing is sent until the first pull."""
    return TokenChannel(
        lambda: services.llm.stream(messages),
        maxsize=services.settings.stream_queue_size,
    )


async def synthesize_reply(
    services: ServiceContext,
    text: str,
    voice: Optional[str] = None,
) -> Optional[SpeechResult]:
    """Best-effort TTS for a completed reply. Failure omits the audio, never fails the turn."""
    if not text.strip() or not services.voice.available:
        return None
    try:
        return await services.voice.synthesize(text, voice=voice or services.settings.default_voice)
    except DependencyUnavailable as e:
        logger.warning("Voice synthesis skipped: %s", e.message)
    except Exception as e:
        logger.warning("Voice synthesis failed: %s", e)
    return None
