"""
Voice API.

POST /v1/voice/tts        — Synthesize speech, returned as a base64 data URL
POST /v1/voice/tts/stream — Synthesize speech, streamed as audio/mpeg bytes
POST /v1/voice/transcribe — Transcribe an uploaded audio file (multipart)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..core.dependencies import get_services
from ..core.errors import DependencyUnavailable
from ..services.context import ServiceContext

logger = logging.getLogger(__name__)

voice_router = APIRouter(prefix="/voice", tags=["voice"])

MAX_AUDIO_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_TTS_CHARS = 5000


class TTSRequest(BaseModel):
    text: str
    voice: Optional[str] = None
    speed: float = Field(default=1.0, ge=0.5, le=2.0)
    pitch: float = Field(default=1.0, ge=0.5, le=2.0)
    style: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class TTSResponse(BaseModel):
    audio_url: str
    duration: float
    content_type: str


class TranscriptionResponse(BaseModel):
    text: str
    confidence: float


def _check_text(text: str) -> str:
    text = text.strip()
    if not text:
        raise HTTPException(status_code=422, detail="Text is empty")
    if len(text) > MAX_TTS_CHARS:
        raise HTTPException(status_code=422, detail=f"Text too long (max {MAX_TTS_CHARS} chars)")
    return text


@voice_router.post("/tts", response_model=TTSResponse)
async def text_to_speech(
    request: TTSRequest,
    services: ServiceContext = Depends(get_services),
):
    text = _check_text(request.text)
    if not services.voice.available:
        raise HTTPException(status_code=503, detail="Voice synthesis is not configured")

    try:
        speech = await services.voice.synthesize(
            text, voice=request.voice, speed=request.speed,
            pitch=request.pitch, style=request.style,
        )
    except DependencyUnavailable as e:
        logger.warning("TTS failed: %s", e.message)
        raise HTTPException(status_code=502, detail="Voice synthesis failed")

    return TTSResponse(audio_url=speech.data_url, duration=speech.duration,
                       content_type=speech.content_type)


@voice_router.post("/tts/stream")
async def text_to_speech_stream(
    request: TTSRequest,
    services: ServiceContext = Depends(get_services),
):
    text = _check_text(request.text)
    if not services.voice.available:
        raise HTTPException(status_code=503, detail="Voice synthesis is not configured")

    async def audio_chunks():
        try:
            async for chunk in services.voice.stream_synthesis(text, voice=request.voice):
                yield chunk
        except DependencyUnavailable as e:
            # Headers are already sent; the client sees a truncated body
            logger.warning("TTS stream failed: %s", e.message)

    return StreamingResponse(
        audio_chunks(),
        media_type="audio/mpeg",
        headers={"Cache-Control": "no-cache"},
    )


@voice_router.post("/transcribe", response_model=TranscriptionResponse)
async def transcribe(
    audio: UploadFile = File(...),
    language: str = Form(default="en"),
    services: ServiceContext = Depends(get_services),
):
    content_type = audio.content_type or ""
    if not content_type.startswith("audio/"):
        raise HTTPException(status_code=415, detail="Only audio files are accepted")

    data = await audio.read()
    if not data:
        raise HTTPException(status_code=422, detail="Audio file is empty")
    if len(data) > MAX_AUDIO_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"Audio file too large (max {MAX_AUDIO_SIZE // (1024 * 1024)}MB)",
        )
    if not services.transcriber.available:
        raise HTTPException(status_code=503, detail="Transcription is not configured")

    try:
        result = await services.transcriber.transcribe(data, language=language,
                                                       content_type=content_type)
    except DependencyUnavailable as e:
        logger.warning("Transcription failed: %s", e.message)
        raise HTTPException(status_code=502, detail="Transcription failed")

    logger.info("Transcribed %d bytes (%s) → %d chars", len(data), language, len(result.text))
    return TranscriptionResponse(text=result.text, confidence=result.confidence)
