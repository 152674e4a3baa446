"""
Per-conversation turn serialization.

At most one turn per conversation is in flight. Within one process this is an
asyncio.Lock per conversation id; with FF_USE_REDIS a Redis lock also
serializes turns across worker processes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..core.errors import ConversationBusy

logger = logging.getLogger(__name__)

# Upper bound on how long a crashed worker can keep a conversation locked
REDIS_LOCK_TTL = 300


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TurnLockRegistry:
    def __init__(
        self,
        timeout: float = 30.0,
        redis_factory: Optional[Callable[[], Awaitable]] = None,
    ):
        self.timeout = timeout
        self._redis_factory = redis_factory
        self._entries: dict[str, _Entry] = {}

    def is_locked(self, convo_id: str) -> bool:
        entry = self._entries.get(convo_id)
        return bool(entry and entry.lock.locked())

    @asynccontextmanager
    async def hold(self, convo_id: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(convo_id, _Entry())
        entry.users += 1
        try:
            if not await self._acquire(entry.lock):
                logger.warning("Turn lock timeout for conversation %s", convo_id)
                raise ConversationBusy(
                    "Another turn is still in progress for this conversation",
                    error_code="conversation_busy",
                )
            try:
                async with self._distributed(convo_id):
                    yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(convo_id, None)

    async def _acquire(self, lock: asyncio.Lock) -> bool:
        """
        Acquire within the timeout. A grant that lands as the deadline expires
        is released rather than leaked (wait_for can drop it before 3.12).
        """
        waiter = asyncio.ensure_future(lock.acquire())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self.timeout)
        except asyncio.CancelledError:
            self._abandon(lock, waiter)
            raise
        if done:
            return True
        self._abandon(lock, waiter)
        return False

    @staticmethod
    def _abandon(lock: asyncio.Lock, waiter: asyncio.Future) -> None:
        if waiter.done() and not waiter.cancelled():
            lock.release()
        else:
            waiter.cancel()

    @asynccontextmanager
    async def _distributed(self, convo_id: str) -> AsyncIterator[None]:
        if self._redis_factory is None:
            yield
            return

        from redis.exceptions import LockError, RedisError

        lock = None
        try:
            client = await self._redis_factory()
            lock = client.lock(
                f"turn-lock:{convo_id}",
                timeout=REDIS_LOCK_TTL,
                blocking_timeout=self.timeout,
            )
            acquired = await lock.acquire()
        except (RedisError, OSError) as e:
            # Redis down: keep serving with the in-process lock
            logger.warning("Redis turn lock unavailable (%s), using local lock only", e)
            lock = None

        if lock is None:
            yield
            return

        if not acquired:
            raise ConversationBusy(
                "Another turn is still in progress for this conversation",
                error_code="conversation_busy",
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning("Redis turn lock for %s expired before release: %s", convo_id, e)
