"""
Long-term user memory — create, list, similarity-ranked retrieval, prompt formatting.

Used by the context assembler to inject relevant memories into every turn,
by the turn finalizer to store extracted moments, and by the memories API.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import DependencyUnavailable
from ..models.memory import Memory
from ..orchestrator.types import MemoryKind, MemoryLookup, MemoryRecord, clamp_unit
from .embeddings import EmbeddingClient, cosine_similarity
from .profile import ensure_user

logger = logging.getLogger(__name__)


def _to_record(m: Memory) -> MemoryRecord:
    return MemoryRecord(
        id=m.id,
        user_id=m.user_id,
        kind=MemoryKind(m.kind),
        content=m.content,
        importance=m.importance,
        tags=list(m.tags or []),
        created_at=m.created_at,
    )


async def add_memory(
    db: AsyncSession,
    embedder: Optional[EmbeddingClient],
    user_id: str,
    content: str,
    kind: MemoryKind = MemoryKind.MEMORY,
    importance: float = 0.5,
    tags: Optional[list[str]] = None,
) -> MemoryRecord:
    """Create a memory. The embedding is best-effort: stored without one if the backend is down."""
    embedding = None
    if embedder is not None and embedder.available:
        try:
            [embedding] = await embedder.embed([content])
        except DependencyUnavailable as e:
            logger.info("Storing memory without embedding: %s", e.message)

    await ensure_user(db, user_id)
    mem = Memory(
        user_id=user_id,
        kind=MemoryKind(kind).value,
        content=content,
        importance=clamp_unit(importance),
        tags=list(tags or []),
        embedding=embedding,
    )
    db.add(mem)
    await db.flush()
    logger.debug("Saved memory: %s/%s = %s", user_id, mem.kind, content[:50])
    return _to_record(mem)


async def _recent_rows(
    db: AsyncSession,
    user_id: str,
    limit: int,
    kind: Optional[MemoryKind] = None,
) -> list[Memory]:
    query = select(Memory).where(Memory.user_id == user_id)
    if kind is not None:
        query = query.where(Memory.kind == MemoryKind(kind).value)
    result = await db.execute(
        query.order_by(Memory.created_at.desc(), Memory.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def recent_memories(
    db: AsyncSession,
    user_id: str,
    limit: int = 10,
    kind: Optional[MemoryKind] = None,
) -> list[MemoryRecord]:
    """Most recent memories first."""
    return [_to_record(m) for m in await _recent_rows(db, user_id, limit, kind)]


async def retrieve_relevant(
    db: AsyncSession,
    embedder: Optional[EmbeddingClient],
    user_id: str,
    query: str,
    k: int = 5,
    candidate_limit: int = 500,
) -> MemoryLookup:
    """
    Top-k memories for `query`.

    RANKED   → cosine similarity against stored embeddings
    DEGRADED → the k most recent memories (embeddings unavailable)
    EMPTY    → the user has no memories
    """
    candidates = await _recent_rows(db, user_id, candidate_limit)
    if not candidates:
        return MemoryLookup.empty()

    recent = [_to_record(m) for m in candidates[:k]]

    if embedder is None or not embedder.available:
        return MemoryLookup.degraded(recent, "embeddings disabled")
    if not query.strip():
        return MemoryLookup.degraded(recent, "empty query")

    embedded = [m for m in candidates if m.embedding]
    if not embedded:
        return MemoryLookup.degraded(recent, "no embedded memories")

    try:
        [qvec] = await embedder.embed([query])
    except DependencyUnavailable as e:
        logger.warning("Memory ranking degraded to recency: %s", e.message)
        return MemoryLookup.degraded(recent, e.message)

    scored = sorted(
        embedded,
        key=lambda m: cosine_similarity(qvec, m.embedding),
        reverse=True,
    )
    ranked = [_to_record(m) for m in scored[:k]]

    # Fewer embedded memories than k: fill the rest with the most recent unranked ones
    if len(ranked) < k:
        seen = {r.id for r in ranked}
        ranked += [_to_record(m) for m in candidates if m.id not in seen][: k - len(ranked)]
    return MemoryLookup.ranked(ranked)


def format_memories_for_prompt(memories: list[MemoryRecord]) -> str:
    """Format memories as a prompt section, most important first."""
    if not memories:
        return ""

    ordered = sorted(memories, key=lambda m: m.importance, reverse=True)
    lines = [f"- {m.content}" for m in ordered]
    return (
        "Relevant memories about this user:\n"
        + "\n".join(lines)
        + "\nReference these naturally when they fit. Never recite them as a list."
    )
