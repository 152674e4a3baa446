"""
Central feature flags. One file controls every external dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the pipeline uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Cache / Realtime / Locks ─────────────────────────────────────
    use_redis: bool = Field(default=False, alias="FF_USE_REDIS")
    # ON  → Redis pub/sub for turn events + cross-process turn locks. Needs REDIS_URL.
    # OFF → Notifications silently skipped, in-process locks only.

    # ── Embeddings ───────────────────────────────────────────────────
    use_embeddings: bool = Field(default=True, alias="FF_USE_EMBEDDINGS")
    # ON  → Memories ranked by vector similarity to the user message.
    # OFF → Most recent memories are used instead (degraded retrieval).

    # ── Safety ───────────────────────────────────────────────────────
    use_toxicity_classifier: bool = Field(default=True, alias="FF_USE_TOXICITY_CLASSIFIER")
    # ON  → Hosted toxic-bert classifier screens every message (fail-open).
    # OFF → Only PII redaction + lexical block list.

    # ── Voice ────────────────────────────────────────────────────────
    use_voice: bool = Field(default=True, alias="FF_USE_VOICE")
    # ON  → ElevenLabs TTS when the client asks for voice. Needs ELEVENLABS_API_KEY.
    # OFF → Turns complete without an audio event.

    use_transcription: bool = Field(default=True, alias="FF_USE_TRANSCRIPTION")
    # ON  → Deepgram speech-to-text. Needs DEEPGRAM_API_KEY.
    # OFF → /voice/transcribe answers 503.

    # ── Planner ──────────────────────────────────────────────────────
    use_planner: bool = Field(default=True, alias="FF_USE_PLANNER")
    # ON  → Planner model decides intent/tone/brevity before generation.
    # OFF → Fixed fallback plan.

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="litellm", alias="FF_LLM_PROVIDER")
    # "litellm" → Model router at LLM_BASE_URL (default). Model names are aliases.
    # "openai"  → Direct OpenAI. Needs OPENAI_API_KEY.
    # "gemini"  → Google Gemini OpenAI-compatible endpoint. Needs GEMINI_API_KEY.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
