"""
Memories API.

GET  /v1/memories/{user_id} — Most recent memories (optionally one kind)
POST /v1/memories           — Store a memory (embedded when the backend is up)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db, get_services
from ..orchestrator.types import MemoryKind, MemoryRecord
from ..services.context import ServiceContext
from ..services.memory import add_memory, recent_memories

logger = logging.getLogger(__name__)

memories_router = APIRouter(prefix="/memories", tags=["memories"])


class MemoryCreate(BaseModel):
    user_id: str = Field(alias="userId")
    content: str
    kind: MemoryKind = MemoryKind.MEMORY
    importance: float = 0.5
    tags: list[str] = []

    model_config = {"populate_by_name": True}


@memories_router.get("/{user_id}", response_model=list[MemoryRecord])
async def list_memories(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    kind: Optional[MemoryKind] = None,
    db: AsyncSession = Depends(get_db),
):
    return await recent_memories(db, user_id, limit=limit, kind=kind)


@memories_router.post("", response_model=MemoryRecord, status_code=201)
async def create_memory(
    request: MemoryCreate,
    services: ServiceContext = Depends(get_services),
    db: AsyncSession = Depends(get_db),
):
    if not request.content.strip():
        raise HTTPException(status_code=422, detail="Memory content is empty")

    record = await add_memory(
        db,
        services.embedder,
        request.user_id,
        request.content.strip(),
        kind=request.kind,
        importance=request.importance,
        tags=request.tags,
    )
    logger.info("Memory stored for %s (%s)", request.user_id, record.kind.value)
    return record
