"""
Guardrails — input/output screening for the turn pipeline.

Layers:
  1. Input validation (length, empty)
  2. PII redaction (email, payment card, phone → placeholder tokens)
  3. Explicit-content block list (lexical)
  4. Toxicity classifier (external, fail-open)
  5. Output validation (response length, prompt leakage)

Redaction is a best-effort lexical pass. It does not guarantee every
identifier is caught.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .errors import InputError

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────

MAX_RESPONSE_LENGTH = 20000
POLICY_REASON = "content policy"

EMAIL_PLACEHOLDER = "[email]"
PHONE_PLACEHOLDER = "[phone]"
CARD_PLACEHOLDER = "[card]"

PII_EMAIL = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
PII_CARD = re.compile(r"\b(?:\d[ -]*?){13,16}\b")
PII_PHONE = re.compile(
    r"(?<!\w)(?:\+?\d{1,3}[-.\s]?)?(?:\(?\d{3,5}\)?[-.\s]?)?\d{3,5}[-.\s]?\d{4}\b"
)

EXPLICIT_HINTS = re.compile(
    r"\b(?:porn\w*|nudes?|cum|blowjob|69|hentai|sex\s*acts?|xxx)\b",
    re.IGNORECASE,
)

INJECTION_PATTERNS = [
    r"ignore\s+(all\s+)?previous\s+instructions",
    r"ignore\s+(all\s+)?above",
    r"disregard\s+(all\s+)?previous",
    r"you\s+are\s+now\s+(?:a|an)\s+",
    r"<\s*system\s*>",
]


@dataclass
class ScreenResult:
    """Result of screening one user utterance."""
    clean_text: str
    blocked: bool = False
    reason: Optional[str] = None


# ── Input Guardrails ──────────────────────────────────────────────────

def validate_input(message: str, max_length: int) -> None:
    """Reject malformed input before any side effect."""
    if not message or not message.strip():
        raise InputError("Message is empty.", error_code="empty_message")
    if len(message) > max_length:
        raise InputError(
            f"Message too long ({len(message)} chars). Maximum is {max_length}.",
            error_code="message_too_long",
        )


def redact_pii(text: str) -> str:
    text = PII_EMAIL.sub(EMAIL_PLACEHOLDER, text)
    text = PII_CARD.sub(CARD_PLACEHOLDER, text)
    return PII_PHONE.sub(PHONE_PLACEHOLDER, text)


def is_likely_explicit(text: str) -> bool:
    return bool(EXPLICIT_HINTS.search(text))


def _log_injection_attempt(text: str) -> None:
    # Log only. The persona prompt handles these; blocking creates false positives.
    lowered = text.lower()
    for pattern in INJECTION_PATTERNS:
        if re.search(pattern, lowered):
            logger.warning("Potential injection detected: %s", text[:100])
            break


async def screen(raw_text: str, classifier=None) -> ScreenResult:
    """
    Redact PII, then screen the cleaned text against the block list and the
    toxicity classifier. The classifier is skipped when the block list already matched.
    """
    clean = redact_pii(raw_text)
    if clean != raw_text:
        logger.info("Redacted PII from user message")

    if is_likely_explicit(clean):
        logger.warning("Blocked by explicit-content list: %s", clean[:100])
        return ScreenResult(clean_text=clean, blocked=True, reason=POLICY_REASON)

    if classifier is not None and await classifier.is_toxic(clean):
        logger.warning("Blocked by toxicity classifier: %s", clean[:100])
        return ScreenResult(clean_text=clean, blocked=True, reason=POLICY_REASON)

    _log_injection_attempt(clean)
    return ScreenResult(clean_text=clean)


# ── Output Guardrails ─────────────────────────────────────────────────

LEAK_INDICATORS = [
    "system prompt",
    "## persona",
    "delivery plan:",
]


def check_output(response: str) -> str:
    """Validate a completed reply before it is persisted. Returns the text to store."""
    resp_lower = response.lower()
    for indicator in LEAK_INDICATORS:
        if indicator in resp_lower:
            logger.warning("Possible system prompt leak detected in output")
            break

    if len(response) > MAX_RESPONSE_LENGTH:
        return response[:MAX_RESPONSE_LENGTH] + "\n\n[Response truncated due to length]"
    return response
