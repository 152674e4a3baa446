"""
Generation backend client.

Features:
  - Retry with exponential backoff + jitter (handles 429, 500, 502, 503, 504)
  - Incremental streaming (SSE) that never replays a partial generation
  - Provider fallback for non-streaming calls (primary → fallback)
  - Model routing: model names are opaque identifiers resolved by the router
  - Token counting (tiktoken-free approximation)
  - Structured logging
"""

import asyncio
import json
import logging
import random
import time
from typing import Any, AsyncIterator, Optional

import httpx

from ..core.config import Settings
from ..core.errors import GenerationError
from ..core.flags import FeatureFlags

logger = logging.getLogger(__name__)

# ── Retry logic ──────────────────────────────────────────────────────

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0

# Stream connection attempts before any fragment was received
STREAM_CONNECT_ATTEMPTS = 2


def make_http_client() -> httpx.AsyncClient:
    """Pooled client shared by every backend in one service context."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=120, write=30, pool=10),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
    )


async def retry_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    label: str = "LLM",
    **kwargs,
) -> httpx.Response:
    """Execute request with exponential backoff + jitter."""
    last_exc = None

    for attempt in range(MAX_RETRIES + 1):
        try:
            resp = await client.request(method, url, **kwargs)

            if resp.status_code not in RETRYABLE_STATUS:
                if resp.status_code >= 400:
                    logger.error("%s API error %d: %s", label, resp.status_code, resp.text[:500])
                resp.raise_for_status()
                return resp

            # Retryable error
            retry_after = resp.headers.get("retry-after")
            delay = float(retry_after) if retry_after else min(
                MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1)
            )
            logger.warning(
                "%s %d (attempt %d/%d) — retrying in %.1fs",
                label, resp.status_code, attempt + 1, MAX_RETRIES + 1, delay,
            )
            last_exc = httpx.HTTPStatusError(
                f"{resp.status_code}", request=resp.request, response=resp
            )
            if attempt < MAX_RETRIES:
                await asyncio.sleep(delay)

        except httpx.TimeoutException as e:
            delay = min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))
            logger.warning(
                "%s timeout (attempt %d/%d) — retrying in %.1fs",
                label, attempt + 1, MAX_RETRIES + 1, delay,
            )
            last_exc = e
            if attempt < MAX_RETRIES:
                await asyncio.sleep(delay)

        except httpx.HTTPStatusError:
            raise  # Non-retryable HTTP errors

    raise last_exc or RuntimeError(f"{label} request failed after retries")


class LLMClient:
    """
    Chat-completions client against an OpenAI-compatible endpoint.

    The default provider is a model router (LiteLLM style): `model` is an alias
    such as "fast-cheap" and the router decides which vendor model serves it.
    """

    def __init__(self, settings: Settings, flags: FeatureFlags, http: httpx.AsyncClient):
        self.settings = settings
        self.flags = flags
        self.http = http

    # ── Provider config ──────────────────────────────────────────────

    def _provider_config(self, provider: Optional[str] = None) -> tuple[str, str]:
        """Returns (base_url, api_key) for a provider."""
        p = (provider or self.flags.llm_provider).lower()
        if p == "gemini":
            return (
                "https://generativelanguage.googleapis.com/v1beta/openai",
                self.settings.gemini_api_key,
            )
        if p == "openai":
            return self.settings.openai_base_url, self.settings.openai_api_key
        return self.settings.llm_base_url, self.settings.llm_api_key

    def _fallback_provider(self, primary: str) -> Optional[str]:
        """Get fallback provider. Returns None if no fallback available."""
        candidates = []
        if primary != "openai" and self.settings.openai_api_key:
            candidates.append("openai")
        if primary != "gemini" and self.settings.gemini_api_key:
            candidates.append("gemini")
        return candidates[0] if candidates else None

    def _payload(
        self,
        messages: list[dict],
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        **sampling,
    ) -> dict[str, Any]:
        s = self.settings
        payload: dict[str, Any] = {
            "model": model or s.default_llm_model,
            "messages": messages,
            "temperature": temperature if temperature is not None else s.default_llm_temperature,
            "max_tokens": max_tokens or s.default_llm_max_tokens,
            "top_p": sampling.get("top_p", s.default_llm_top_p),
            "presence_penalty": sampling.get("presence_penalty", s.default_llm_presence_penalty),
            "frequency_penalty": sampling.get("frequency_penalty", s.default_llm_frequency_penalty),
        }
        if sampling.get("response_format"):
            payload["response_format"] = sampling["response_format"]
        return payload

    @staticmethod
    def _headers(api_key: str) -> dict:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    # ── Single completion ────────────────────────────────────────────

    async def chat(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        provider: Optional[str] = None,
        **sampling,
    ) -> dict:
        """
        Chat completion with retry + optional provider fallback.
        Returns the full API response as dict.
        """
        active_provider = (provider or self.flags.llm_provider).lower()
        base_url, api_key = self._provider_config(provider)

        if not api_key:
            raise ValueError(f"No API key for LLM provider '{active_provider}'.")

        payload = self._payload(messages, model, temperature, max_tokens, **sampling)
        url = f"{base_url.rstrip('/')}/chat/completions"
        start = time.monotonic()

        try:
            resp = await retry_request(
                self.http, "POST", url, json=payload, headers=self._headers(api_key),
            )
            data = resp.json()
            elapsed = time.monotonic() - start

            usage = data.get("usage", {})
            logger.info(
                "LLM chat: %dms | in=%d out=%d tokens | model=%s",
                int(elapsed * 1000),
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
                payload["model"],
            )
            return data

        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error("LLM failed after %.1fs: %s", elapsed, e)

            fallback = self._fallback_provider(active_provider)
            if fallback and not provider:  # Only fallback once
                logger.info("Falling back to %s", fallback)
                return await self.chat(
                    messages=messages, model=model, temperature=temperature,
                    max_tokens=max_tokens, provider=fallback, **sampling,
                )
            raise

    async def chat_simple(
        self,
        prompt: str,
        system: str = "",
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
        **sampling,
    ) -> str:
        """Send a prompt, get a string back."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self.chat(
            messages=messages, model=model,
            temperature=temperature, max_tokens=max_tokens, **sampling,
        )
        return response["choices"][0]["message"]["content"] or ""

    # ── Streaming ────────────────────────────────────────────────────

    async def stream(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **sampling,
    ) -> AsyncIterator[str]:
        """
        Streaming chat completion. Yields content fragments as they arrive.

        A failed connection is retried only while nothing has been yielded.
        Once a fragment has reached the caller, a failure raises GenerationError:
        a retried generation is not guaranteed to reproduce the same prefix.
        Closing this generator exits the httpx stream context, which releases
        the upstream connection.
        """
        base_url, api_key = self._provider_config()
        if not api_key:
            raise GenerationError("LLM not configured.", error_code="llm_not_configured")

        payload = self._payload(messages, model, temperature, max_tokens, **sampling)
        payload["stream"] = True
        url = f"{base_url.rstrip('/')}/chat/completions"
        headers = self._headers(api_key)

        last_error: Optional[Exception] = None
        for attempt in range(STREAM_CONNECT_ATTEMPTS):
            yielded = 0
            total_chars = 0
            logger.info("LLM stream start: model=%s messages=%d attempt=%d",
                        payload["model"], len(messages), attempt + 1)
            try:
                async with self.http.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        error_body = await resp.aread()
                        error_text = error_body.decode("utf-8", errors="replace")[:500]
                        logger.warning("LLM stream %d (model=%s): %s",
                                       resp.status_code, payload["model"], error_text)
                        last_error = GenerationError(
                            f"Generation backend returned {resp.status_code}",
                            error_code="backend_status",
                            details={"status": resp.status_code},
                        )
                        if resp.status_code not in RETRYABLE_STATUS:
                            raise last_error
                    else:
                        async for line in resp.aiter_lines():
                            if not line.startswith("data: "):
                                continue
                            data_str = line[6:]
                            if data_str.strip() == "[DONE]":
                                break
                            try:
                                chunk = json.loads(data_str)
                            except json.JSONDecodeError:
                                continue

                            choice = (chunk.get("choices") or [{}])[0]
                            content = (choice.get("delta") or {}).get("content") or ""
                            if content:
                                yielded += 1
                                total_chars += len(content)
                                yield content
                            if choice.get("finish_reason"):
                                break

                        logger.info("LLM stream done: model=%s fragments=%d chars=%d",
                                    payload["model"], yielded, total_chars)
                        return

            except GenerationError:
                raise
            except (httpx.TimeoutException, httpx.TransportError, OSError) as e:
                logger.warning("LLM stream network error (model=%s): %s", payload["model"], e)
                if yielded:
                    raise GenerationError(
                        "Generation backend failed mid-stream",
                        error_code="stream_interrupted",
                        details={"fragments": yielded},
                    ) from e
                last_error = e

            if attempt + 1 < STREAM_CONNECT_ATTEMPTS:
                delay = 1.0 + random.uniform(0, 0.5)
                logger.info("LLM stream: retrying in %.1fs", delay)
                await asyncio.sleep(delay)

        raise GenerationError(
            "Generation backend unavailable",
            error_code="backend_unavailable",
        ) from last_error


# ── Token estimation ─────────────────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """
    Estimate token count without tiktoken dependency.
    Rule of thumb: ~4 chars per token for English.
    """
    return max(1, len(text) // 4)


def estimate_messages_tokens(messages: list[dict]) -> int:
    """Estimate total tokens in a message list."""
    total = 0
    for msg in messages:
        total += 4  # message overhead
        total += estimate_tokens(msg.get("content") or "")
    total += 2  # priming
    return total
