"""
Main turn loop.

screen → open conversation → lock → assemble context → plan → generate
→ stream tokens → (voice) → finalize → complete.

Screening runs before anything is written, so a rejected message leaves no
trace. Everything after the conversation is opened runs under the
per-conversation turn lock; finalization (including a summary refresh)
completes before the next turn for the same conversation can start.

Events yielded by `handle_turn_stream`:
  {"type": "token", "content": "...", "is_complete": false}   one per fragment
  {"type": "token", "content": "", "is_complete": true}       generation ended
  {"type": "audio", "audio_url": "data:...", "duration": 1.2} voice only, optional
  {"type": "complete", "convo_id": "...", "message": "..."}   terminal
  {"type": "error", "kind": "...", "error": "..."}            terminal
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from ..core.errors import CompanionError, InputError, PolicyViolation
from ..core.guardrails import check_output, screen, validate_input
from ..services import realtime
from ..services.context import ServiceContext
from .context import assemble, open_conversation
from .finalizer import finalize, record_user_message
from .generation import TokenChannel, generate, synthesize_reply
from .persona import DEFAULT_PERSONA, Persona
from .planner import apply_plan, plan_turn
from .types import TurnRequest

logger = logging.getLogger(__name__)

POLICY_MESSAGE = "Request violates content guidelines."
INTERNAL_MESSAGE = "Something went wrong on my end. Please try again."


@dataclass
class PreparedTurn:
    """A request that passed validation and screening. Nothing persisted yet."""
    request: TurnRequest
    clean_text: str


def error_event(kind: str, message: str) -> dict:
    return {"type": "error", "kind": kind, "error": message}


def token_event(content: str, is_complete: bool = False) -> dict:
    return {"type": "token", "content": content, "is_complete": is_complete}


async def prepare_turn(services: ServiceContext, request: TurnRequest) -> PreparedTurn:
    """
    Validate and screen a request. Raises InputError or PolicyViolation;
    callers map those to a rejection before any stream is opened.
    """
    if not request.user_id or not request.user_id.strip():
        raise InputError("user_id is required.", error_code="missing_user")
    validate_input(request.text, services.settings.max_message_length)

    result = await screen(request.text, services.classifier)
    if result.blocked:
        raise PolicyViolation(POLICY_MESSAGE, error_code="content_policy",
                              details={"reason": result.reason})
    return PreparedTurn(request=request, clean_text=result.clean_text)


async def _notify(fn, convo_id: Optional[str], data: dict) -> None:
    if convo_id is None:
        return
    try:
        await fn(convo_id, data)
    except Exception as e:
        logger.warning("Realtime notification failed for %s: %s", convo_id, e)


async def _record_cancelled(services: ServiceContext, convo_id: str, text: str) -> None:
    try:
        await record_user_message(services, convo_id, text)
    except Exception as e:
        logger.warning("Could not record cancelled turn for %s: %s", convo_id, e)


async def handle_turn_stream(
    services: ServiceContext,
    prepared: PreparedTurn,
    persona: Persona = DEFAULT_PERSONA,
) -> AsyncGenerator[dict, None]:
    """
    Streaming entry point for a screened turn. Yields event dicts and ends
    with exactly one `complete` or `error` event.
    """
    request = prepared.request
    start = time.monotonic()
    convo_id: Optional[str] = request.convo_id

    try:
        convo_id, created = await open_conversation(services, request.user_id, request.convo_id)
        if created:
            logger.info("Created conversation %s for user %s", convo_id, request.user_id)

        async with services.locks.hold(convo_id):
            channel: Optional[TokenChannel] = None
            finalizing = False
            try:
                await _notify(realtime.turn_started, convo_id, {"message": prepared.clean_text[:100]})

                ctx = await assemble(services, request.user_id, convo_id, prepared.clean_text, persona)
                plan = await plan_turn(services, prepared.clean_text, ctx, persona)
                messages = apply_plan(ctx.messages, plan)

                # 1. Stream the reply
                channel = generate(services, messages)
                parts: list[str] = []
                async for fragment in channel:
                    if fragment.final:
                        yield token_event("", is_complete=True)
                        break
                    parts.append(fragment.text)
                    yield token_event(fragment.text)

                reply = check_output("".join(parts))

                # 2. Voice (best-effort)
                if request.voice_enabled:
                    speech = await synthesize_reply(services, reply)
                    if speech is not None:
                        yield {"type": "audio", "audio_url": speech.data_url, "duration": speech.duration}

                # 3. Persist + post-turn work. Shielded so a disconnect can't split it.
                finalizing = True
                result = await asyncio.shield(services.spawn(
                    finalize(services, request.user_id, convo_id, prepared.clean_text, reply)
                ))
            except (asyncio.CancelledError, GeneratorExit):
                logger.info("Turn cancelled for conversation %s", convo_id)
                # No await before the write is started: a server that cancels the
                # whole request scope re-cancels this task at every await.
                record = None
                if not finalizing:
                    record = services.spawn(_record_cancelled(services, convo_id, prepared.clean_text))
                if channel is not None:
                    channel.cancel()
                if record is not None:
                    await asyncio.shield(record)
                raise
            finally:
                if channel is not None:
                    await channel.aclose()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Turn complete: convo=%s fragments=%d chars=%d memories=%d summary=%s in %dms",
            convo_id, channel.fragments, len(reply), result.memories_stored,
            result.summary_refreshed, elapsed_ms,
        )
        await _notify(realtime.turn_completed, convo_id, {
            "message_count": result.message_count,
            "elapsed_ms": elapsed_ms,
        })
        yield {"type": "complete", "convo_id": convo_id, "message": reply}

    except CompanionError as e:
        logger.warning("Turn failed (%s/%s) for conversation %s: %s",
                       e.kind, e.error_code, convo_id, e.message)
        await _notify(realtime.turn_error, convo_id, {"kind": e.kind, "error": e.message})
        yield error_event(e.kind, e.message)
    except Exception as e:
        logger.exception("Unexpected turn failure for conversation %s: %s", convo_id, e)
        await _notify(realtime.turn_error, convo_id, {"kind": "internal", "error": str(e)})
        yield error_event("internal", INTERNAL_MESSAGE)


async def run_turn(
    services: ServiceContext,
    request: TurnRequest,
    persona: Persona = DEFAULT_PERSONA,
) -> AsyncGenerator[dict, None]:
    """
    Prepare and stream in one call. Rejections become a single error event,
    for callers without a separate rejection channel.
    """
    try:
        prepared = await prepare_turn(services, request)
    except CompanionError as e:
        logger.info("Turn rejected (%s): %s", e.kind, e.message)
        yield error_event(e.kind, e.message)
        return

    async for event in handle_turn_stream(services, prepared, persona):
        yield event


async def collect_turn(
    services: ServiceContext,
    request: TurnRequest,
    persona: Persona = DEFAULT_PERSONA,
) -> dict:
    """Non-streaming variant: run the whole turn, return the terminal event plus the full event list."""
    events = [event async for event in run_turn(services, request, persona)]
    return {**events[-1], "events": events}
