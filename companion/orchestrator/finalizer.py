"""
Turn finalization — runs once per completed turn, after the full reply is known.

  1. Persist user + assistant messages (in that order, one transaction). Fatal on failure.
  2. Extract candidate memories from the reply and store them as moments. Soft.
  3. Refresh the conversation summary when the message count crosses the
     refresh interval. Soft.

The summary is deliberately stale between refreshes: regenerating it every
turn would cost one extra model call per message.
"""

import logging
from dataclasses import dataclass

from ..core.errors import PersistenceError
from ..services.context import ServiceContext
from ..services.memory import add_memory
from .extraction import extract_topics
from .state import (
    add_message,
    build_history,
    count_messages,
    get_recent_messages,
    get_summary,
    update_summary,
)
from .types import MemoryKind, Role

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM = "You are a concise conversation summarizer. Output only the summary."


@dataclass
class FinalizeResult:
    message_count: int
    memories_stored: int = 0
    summary_refreshed: bool = False


def summary_refresh_due(count_before: int, count_after: int, interval: int) -> bool:
    """True when the count reached or passed a multiple of `interval` during this turn."""
    if interval <= 0:
        return False
    return count_after // interval > count_before // interval


async def record_user_message(services: ServiceContext, convo_id: str, text: str) -> bool:
    """
    Persist only the user's message (turn cancelled before the reply completed).
    The message counts toward the refresh interval like any other; returns
    whether it triggered a summary refresh.
    """
    async with services.session() as db:
        before = await count_messages(db, convo_id)
        await add_message(db, convo_id, Role.USER.value, text)
    logger.info("Recorded user message for cancelled turn in %s", convo_id)

    if summary_refresh_due(before, before + 1, services.settings.summary_refresh_interval):
        return await refresh_summary(services, convo_id)
    return False


def topic_summary(history: list[dict]) -> str:
    user_count = sum(1 for m in history if m["role"] == Role.USER.value)
    ai_count = sum(1 for m in history if m["role"] == Role.ASSISTANT.value)
    topics = extract_topics([m["content"] for m in history])
    return (
        f"Conversation with {user_count} user messages and {ai_count} AI responses. "
        f"Topics discussed: {', '.join(topics) if topics else 'general chat'}"
    )


async def generate_summary(services: ServiceContext, history: list[dict], previous: str = "") -> str:
    conversation = "\n".join(f"{m['role']}: {m['content'][:500]}" for m in history)
    previous_block = f"Previous summary:\n{previous}\n\n" if previous else ""
    summary = await services.llm.chat_simple(
        prompt=(
            "Provide a concise summary (2-3 sentences) of this conversation, focusing on:\n"
            "- Key topics discussed\n"
            "- Important facts about the user\n"
            "- Relationship developments\n"
            "- Any preferences or interests mentioned\n\n"
            f"{previous_block}Conversation:\n{conversation}\n\nSummary:"
        ),
        system=SUMMARY_SYSTEM,
        model=services.settings.summary_llm_model,
        temperature=0.3,
        max_tokens=200,
    )
    summary = summary.strip()
    if not summary:
        raise ValueError("empty summary")
    return summary


async def refresh_summary(services: ServiceContext, convo_id: str) -> bool:
    """Regenerate and store the summary from the latest window. Never raises."""
    try:
        async with services.session() as db:
            recent = await get_recent_messages(db, convo_id, limit=services.settings.summary_window)
            previous = await get_summary(db, convo_id)
        history = build_history(recent)

        try:
            summary = await generate_summary(services, history, previous)
        except Exception as e:
            logger.warning("Summary model unavailable, using topic summary: %s", e)
            summary = topic_summary(history)

        async with services.session() as db:
            await update_summary(db, convo_id, summary)
        logger.info("Refreshed summary for conversation %s (%d messages)", convo_id, len(history))
        return True
    except Exception as e:
        logger.warning("Failed to refresh summary for %s: %s", convo_id, e)
        return False


async def store_moments(services: ServiceContext, user_id: str, assistant_text: str) -> int:
    """Store extracted moments. Never raises; returns how many were stored."""
    try:
        candidates = services.extractor.extract(assistant_text)
    except Exception as e:
        logger.warning("Memory extraction failed: %s", e)
        return 0

    stored = 0
    for content in candidates:
        try:
            async with services.session() as db:
                await add_memory(
                    db,
                    services.embedder,
                    user_id,
                    content,
                    kind=MemoryKind.MOMENT,
                    importance=services.settings.moment_importance,
                )
            stored += 1
        except Exception as e:
            logger.warning("Failed to store extracted memory: %s", e)
    if stored:
        logger.info("Stored %d extracted memories for user %s", stored, user_id)
    return stored


async def finalize(
    services: ServiceContext,
    user_id: str,
    convo_id: str,
    user_text: str,
    assistant_text: str,
) -> FinalizeResult:
    try:
        async with services.session() as db:
            before = await count_messages(db, convo_id)
            await add_message(db, convo_id, Role.USER.value, user_text)
            await add_message(db, convo_id, Role.ASSISTANT.value, assistant_text)
            after = await count_messages(db, convo_id)
    except Exception as e:
        logger.error("Failed to persist turn for conversation %s: %s", convo_id, e)
        raise PersistenceError("Could not save the conversation turn", error_code="persist_turn") from e

    result = FinalizeResult(message_count=after)
    result.memories_stored = await store_moments(services, user_id, assistant_text)

    if summary_refresh_due(before, after, services.settings.summary_refresh_interval):
        result.summary_refreshed = await refresh_summary(services, convo_id)

    return result
