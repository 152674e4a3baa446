"""
Conversation state — conversations, ordered messages and the rolling summary.

Messages are append-only. Order within a conversation is the sequence number,
assigned as max+1 at insert time.
"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import InputError
from ..models.conversation import Conversation, Message
from ..services.profile import ensure_user

logger = logging.getLogger(__name__)


async def get_or_create_conversation(
    db: AsyncSession,
    user_id: str,
    convo_id: Optional[str] = None,
) -> tuple[Conversation, bool]:
    """
    Get existing conversation or create a new one. Returns (conversation, created).
    A conversation id that belongs to another user is rejected.
    """
    await ensure_user(db, user_id)

    if convo_id:
        convo = await db.get(Conversation, convo_id)
        if convo is not None:
            if convo.user_id != user_id:
                raise InputError("Conversation belongs to another user", error_code="convo_owner")
            return convo, False

    convo = Conversation(user_id=user_id, summary_text="")
    if convo_id:
        convo.id = convo_id
    db.add(convo)
    await db.flush()
    logger.info("Created conversation: %s (user=%s)", convo.id, user_id)
    return convo, True


async def get_summary(db: AsyncSession, convo_id: str) -> str:
    result = await db.execute(
        select(Conversation.summary_text).where(Conversation.id == convo_id)
    )
    return result.scalar_one_or_none() or ""


async def update_summary(db: AsyncSession, convo_id: str, summary: str) -> None:
    convo = await db.get(Conversation, convo_id)
    if convo is None:
        raise InputError(f"Conversation {convo_id} not found", error_code="convo_missing")
    convo.summary_text = summary
    await db.flush()


async def add_message(
    db: AsyncSession,
    convo_id: str,
    role: str,
    content: str,
) -> Message:
    """Append a message to the conversation."""
    result = await db.execute(
        select(func.max(Message.sequence_number)).where(Message.conversation_id == convo_id)
    )
    last = result.scalar_one_or_none()
    seq = (last or 0) + 1

    msg = Message(
        conversation_id=convo_id,
        role=role,
        content=content,
        sequence_number=seq,
    )
    db.add(msg)
    await db.flush()
    return msg


async def get_recent_messages(
    db: AsyncSession,
    convo_id: str,
    limit: int = 12,
) -> list[Message]:
    """The most recent `limit` messages, oldest first."""
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == convo_id)
        .order_by(Message.sequence_number.desc())
        .limit(limit)
    )
    messages = list(result.scalars().all())
    messages.reverse()  # Oldest first
    return messages


async def count_messages(db: AsyncSession, convo_id: str) -> int:
    result = await db.execute(
        select(func.count(Message.id)).where(Message.conversation_id == convo_id)
    )
    return int(result.scalar_one())


def build_history(messages: list[Message]) -> list[dict]:
    """LLM-compatible history from stored messages."""
    return [{"role": m.role, "content": m.content} for m in messages if m.content]
