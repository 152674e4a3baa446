"""
Realtime notifications. Thin wrapper around core.redis.
Typed event helpers for the turn lifecycle.
"""

from ..core import redis as _redis


async def turn_started(convo_id: str, data: dict = None):
    await _redis.notify_conversation(convo_id, "turn.started", data)


async def turn_completed(convo_id: str, data: dict = None):
    await _redis.notify_conversation(convo_id, "turn.completed", data)


async def turn_error(convo_id: str, data: dict = None):
    await _redis.notify_conversation(convo_id, "turn.error", data)
