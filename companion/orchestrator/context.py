"""
Context assembly — everything the model sees for one turn.

Profile, summary, relevant memories and recent history are fetched
concurrently, each on its own session. The resulting prompt is ordered:

  1. system   persona preamble
  2. system   profile + summary + memory context (omitted when all empty)
  3. history  oldest → newest
  4. user     the new (screened) message, always last

Failure policy:
  profile / summary / memories → degrade to empty, turn continues
  history                      → HistoryUnavailable, turn aborts
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..core.errors import HistoryUnavailable, InputError, PersistenceError
from ..services.context import ServiceContext
from ..services.llm import estimate_messages_tokens
from ..services.memory import format_memories_for_prompt, retrieve_relevant
from ..services.profile import format_profile_for_prompt, get_profile
from .persona import DEFAULT_PERSONA, Persona
from .state import build_history, get_or_create_conversation, get_recent_messages, get_summary
from .types import MemoryLookup, UserProfile

logger = logging.getLogger(__name__)


@dataclass
class AssembledContext:
    convo_id: str
    messages: list[dict]
    profile: Optional[UserProfile] = None
    summary: str = ""
    memories: MemoryLookup = field(default_factory=MemoryLookup.empty)
    history: list[dict] = field(default_factory=list)


async def open_conversation(
    services: ServiceContext,
    user_id: str,
    convo_id: Optional[str] = None,
) -> tuple[str, bool]:
    """
    Resolve the turn's conversation, creating it lazily. Returns (convo_id, created).

    Two first turns racing on the same new id (or user) both try the insert;
    the loser retries once and picks up the row the winner committed.
    """
    for attempt in (1, 2):
        try:
            async with services.session() as db:
                convo, created = await get_or_create_conversation(db, user_id, convo_id)
                return convo.id, created
        except InputError:
            raise
        except IntegrityError as e:
            if attempt == 1:
                logger.info("Conversation %s created concurrently, reloading", convo_id)
                continue
            logger.error("Could not open conversation for user %s: %s", user_id, e)
            raise PersistenceError("Could not open conversation", error_code="convo_open") from e
        except Exception as e:
            logger.error("Could not open conversation for user %s: %s", user_id, e)
            raise PersistenceError("Could not open conversation", error_code="convo_open") from e


# ── Fetchers (one session each so they can run concurrently) ─────────

async def _fetch_profile(services: ServiceContext, user_id: str) -> Optional[UserProfile]:
    async with services.session() as db:
        return await get_profile(db, user_id)


async def _fetch_summary(services: ServiceContext, convo_id: str) -> str:
    async with services.session() as db:
        return await get_summary(db, convo_id)


async def _fetch_memories(services: ServiceContext, user_id: str, query: str) -> MemoryLookup:
    async with services.session() as db:
        return await retrieve_relevant(
            db,
            services.embedder,
            user_id,
            query,
            k=services.settings.memory_top_k,
            candidate_limit=services.settings.memory_candidate_limit,
        )


async def _fetch_history(services: ServiceContext, convo_id: str) -> list[dict]:
    async with services.session() as db:
        messages = await get_recent_messages(db, convo_id, limit=services.settings.history_limit)
        return build_history(messages)


def _soft(result, default, what: str):
    """Unwrap a gather() result for a dependency the turn can live without."""
    if isinstance(result, asyncio.CancelledError):
        raise result
    if isinstance(result, BaseException):
        logger.warning("Context %s unavailable, continuing without it: %s", what, result)
        return default
    return result


def build_context_block(
    profile: Optional[UserProfile],
    summary: str,
    memories: MemoryLookup,
) -> str:
    sections = []
    if summary:
        sections.append(f"Conversation summary:\n{summary}")
    profile_text = format_profile_for_prompt(profile)
    if profile_text:
        sections.append(profile_text)
    memory_text = format_memories_for_prompt(memories.memories)
    if memory_text:
        sections.append(memory_text)
    return "\n\n".join(sections)


def build_messages(
    persona: Persona,
    profile: Optional[UserProfile],
    summary: str,
    memories: MemoryLookup,
    history: list[dict],
    user_text: str,
) -> list[dict]:
    messages = [{"role": "system", "content": persona.render()}]

    block = build_context_block(profile, summary, memories)
    if block:
        messages.append({"role": "system", "content": block})

    messages.extend(history)
    messages.append({"role": "user", "content": user_text})
    return messages


async def assemble(
    services: ServiceContext,
    user_id: str,
    convo_id: str,
    clean_text: str,
    persona: Persona = DEFAULT_PERSONA,
) -> AssembledContext:
    start = time.monotonic()

    profile_r, summary_r, memories_r, history_r = await asyncio.gather(
        _fetch_profile(services, user_id),
        _fetch_summary(services, convo_id),
        _fetch_memories(services, user_id, clean_text),
        _fetch_history(services, convo_id),
        return_exceptions=True,
    )

    if isinstance(history_r, BaseException):
        if isinstance(history_r, asyncio.CancelledError):
            raise history_r
        logger.error("History fetch failed for conversation %s: %s", convo_id, history_r)
        raise HistoryUnavailable(
            "Conversation history unavailable", error_code="history_fetch"
        ) from history_r

    profile = _soft(profile_r, None, "profile")
    summary = _soft(summary_r, "", "summary")
    memories = _soft(memories_r, MemoryLookup.empty("memory fetch failed"), "memories")

    messages = build_messages(persona, profile, summary, memories, history_r, clean_text)

    logger.info(
        "Context assembled: convo=%s history=%d memories=%d (%s) ~%d tokens in %dms",
        convo_id, len(history_r), len(memories.memories), memories.status.value,
        estimate_messages_tokens(messages), int((time.monotonic() - start) * 1000),
    )

    return AssembledContext(
        convo_id=convo_id,
        messages=messages,
        profile=profile,
        summary=summary,
        memories=memories,
        history=history_r,
    )
