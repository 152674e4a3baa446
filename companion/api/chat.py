"""
Chat API — streaming turns + history.

POST /v1/chat/stream             — Server-Sent Events (SSE) streaming turn
GET  /v1/chat/{convo_id}/history — Stored messages, oldest first
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db, get_services
from ..core.errors import InputError, PolicyViolation
from ..core.guardrails import POLICY_REASON
from ..models.conversation import Conversation
from ..orchestrator.orchestrator import handle_turn_stream, prepare_turn
from ..orchestrator.state import get_recent_messages
from ..orchestrator.types import TurnRequest
from ..services.context import ServiceContext

logger = logging.getLogger(__name__)

chat_router = APIRouter(prefix="/chat", tags=["chat"])


class StreamRequest(BaseModel):
    user_id: str = Field(alias="userId")
    text: str
    convo_id: Optional[str] = Field(default=None, alias="convoId")
    voice_enabled: bool = Field(default=False, alias="voiceEnabled")

    model_config = {"populate_by_name": True}


class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    sequence_number: int
    created_at: str


class HistoryResponse(BaseModel):
    convo_id: str
    summary: str = ""
    messages: list[MessageOut] = []


def sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@chat_router.post("/stream")
async def chat_stream(
    request: StreamRequest,
    services: ServiceContext = Depends(get_services),
):
    """
    Stream the companion's reply via Server-Sent Events (SSE).

    Rejected before streaming:
      400 {"error": "...", "reason": "content policy"}  blocked by the safety guard
      422 {"error": "...", "kind": "input"}             empty / oversized message

    Events:
      data: {"type": "token", "content": "Hel", "is_complete": false}
      data: {"type": "token", "content": "", "is_complete": true}
      data: {"type": "audio", "audio_url": "data:audio/mpeg;base64,...", "duration": 2.4}
      data: {"type": "complete", "convo_id": "...", "message": "..."}
      data: {"type": "error", "kind": "generation", "error": "..."}
    """
    turn = TurnRequest(
        user_id=request.user_id,
        text=request.text,
        convo_id=request.convo_id,
        voice_enabled=request.voice_enabled,
    )
    try:
        prepared = await prepare_turn(services, turn)
    except PolicyViolation as e:
        return JSONResponse(status_code=400, content={"error": e.message, "reason": POLICY_REASON})
    except InputError as e:
        return JSONResponse(status_code=422, content={"error": e.message, "kind": e.kind})

    async def event_generator():
        async for event in handle_turn_stream(services, prepared):
            yield sse(event)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@chat_router.get("/{convo_id}/history", response_model=HistoryResponse)
async def chat_history(
    convo_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """The most recent `limit` messages of a conversation, oldest first."""
    convo = await db.get(Conversation, convo_id)
    if convo is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = await get_recent_messages(db, convo_id, limit=limit)
    return HistoryResponse(
        convo_id=convo_id,
        summary=convo.summary_text or "",
        messages=[
            MessageOut(
                id=str(m.id),
                role=m.role,
                content=m.content,
                sequence_number=m.sequence_number,
                created_at=m.created_at.isoformat() if m.created_at else "",
            )
            for m in messages
        ],
    )
