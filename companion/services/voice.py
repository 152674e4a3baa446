"""
Voice backends.

  - ElevenLabs text-to-speech (full clip or streamed bytes)
  - Deepgram prerecorded speech-to-text
"""

import base64
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from ..core.config import Settings
from ..core.errors import DependencyUnavailable
from ..core.flags import FeatureFlags

logger = logging.getLogger(__name__)

SECONDS_PER_CHAR = 0.05  # rough speech-duration estimate


@dataclass
class SpeechResult:
    audio: bytes
    duration: float
    content_type: str = "audio/mpeg"

    @property
    def data_url(self) -> str:
        encoded = base64.b64encode(self.audio).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass
class Transcript:
    text: str
    confidence: float = 0.0


def estimate_duration(text: str) -> float:
    return round(len(text) * SECONDS_PER_CHAR, 2)


def _voice_settings(speed: float = 1.0, pitch: float = 1.0, style: Optional[float] = None) -> dict:
    settings = {
        "stability": max(0.0, min(1.0, 0.6 - (speed - 1) * 0.2)),
        "similarity_boost": max(0.0, min(1.0, 0.6 + (pitch - 1) * 0.2)),
    }
    if style is not None:
        settings["style"] = style
    return settings


class VoiceClient:
    """ElevenLabs TTS."""

    def __init__(self, settings: Settings, flags: FeatureFlags, http: httpx.AsyncClient):
        self.settings = settings
        self.flags = flags
        self.http = http

    @property
    def available(self) -> bool:
        return self.flags.use_voice and bool(self.settings.elevenlabs_api_key)

    def _request(self, text: str, voice: Optional[str], speed: float, pitch: float,
                 style: Optional[float]) -> tuple[str, dict, dict]:
        voice_id = voice or self.settings.default_voice
        url = f"{self.settings.elevenlabs_base_url.rstrip('/')}/text-to-speech/{voice_id}"
        headers = {
            "xi-api-key": self.settings.elevenlabs_api_key,
            "Accept": "audio/mpeg",
        }
        payload = {
            "text": text,
            "model_id": self.settings.elevenlabs_model,
            "voice_settings": _voice_settings(speed, pitch, style),
        }
        return url, headers, payload

    async def synthesize(
        self,
        text: str,
        voice: Optional[str] = None,
        speed: float = 1.0,
        pitch: float = 1.0,
        style: Optional[float] = None,
    ) -> SpeechResult:
        if not self.available:
            raise DependencyUnavailable("Voice synthesis disabled", error_code="voice_disabled")

        url, headers, payload = self._request(text, voice, speed, pitch, style)
        start = time.monotonic()
        try:
            resp = await self.http.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DependencyUnavailable("Voice synthesis failed") from e

        logger.info("TTS: %d chars → %d bytes in %dms",
                    len(text), len(resp.content), int((time.monotonic() - start) * 1000))
        return SpeechResult(audio=resp.content, duration=estimate_duration(text))

    async def stream_synthesis(self, text: str, voice: Optional[str] = None) -> AsyncIterator[bytes]:
        if not self.available:
            raise DependencyUnavailable("Voice synthesis disabled", error_code="voice_disabled")

        url, headers, payload = self._request(text, voice, 1.0, 1.0, None)
        payload["voice_settings"] = {"stability": 0.5, "similarity_boost": 0.5}
        async with self.http.stream("POST", f"{url}/stream", json=payload, headers=headers) as resp:
            if resp.status_code >= 400:
                body = await resp.aread()
                logger.warning("TTS stream %d: %s", resp.status_code, body[:200])
                raise DependencyUnavailable("Voice synthesis failed",
                                            details={"status": resp.status_code})
            async for chunk in resp.aiter_bytes():
                yield chunk


class TranscriptionClient:
    """Deepgram prerecorded transcription."""

    def __init__(self, settings: Settings, flags: FeatureFlags, http: httpx.AsyncClient):
        self.settings = settings
        self.flags = flags
        self.http = http

    @property
    def available(self) -> bool:
        return self.flags.use_transcription and bool(self.settings.deepgram_api_key)

    async def transcribe(
        self,
        audio: bytes,
        language: str = "en",
        content_type: str = "audio/wav",
    ) -> Transcript:
        if not self.available:
            raise DependencyUnavailable("Transcription disabled", error_code="transcription_disabled")

        url = f"{self.settings.deepgram_base_url.rstrip('/')}/listen"
        params = {
            "model": self.settings.deepgram_model,
            "language": language,
            "smart_format": "true",
            "punctuate": "true",
        }
        headers = {
            "Authorization": f"Token {self.settings.deepgram_api_key}",
            "Content-Type": content_type,
        }
        try:
            resp = await self.http.post(url, params=params, content=audio, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DependencyUnavailable("Transcription failed") from e

        channels = resp.json().get("results", {}).get("channels") or [{}]
        alternatives = channels[0].get("alternatives") or [{}]
        best = alternatives[0]
        return Transcript(
            text=best.get("transcript", ""),
            confidence=float(best.get("confidence", 0.0)),
        )
