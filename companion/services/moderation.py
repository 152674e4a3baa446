"""
Toxicity classifier — hosted text-classification model (toxic-bert).

The endpoint follows the Hugging Face inference API shape:
  POST {"inputs": text} → [[{"label": "toxic", "score": 0.97}, ...]]
"""

import logging
import re
from typing import Optional

import httpx

from ..core.config import Settings
from ..core.flags import FeatureFlags

logger = logging.getLogger(__name__)

_TOXIC_LABEL_RE = re.compile(r"toxic", re.IGNORECASE)


class ToxicityClassifier:
    def __init__(self, settings: Settings, flags: FeatureFlags, http: httpx.AsyncClient):
        self.settings = settings
        self.flags = flags
        self.http = http

    async def classify(self, text: str) -> list[tuple[str, float]]:
        """Return (label, score) pairs, highest score first. Raises on backend failure."""
        headers = {}
        if self.settings.toxicity_api_key:
            headers["Authorization"] = f"Bearer {self.settings.toxicity_api_key}"

        resp = await self.http.post(
            self.settings.toxicity_api_url,
            json={"inputs": text},
            headers=headers,
            timeout=10,
        )
        resp.raise_for_status()
        data = resp.json()

        # Single input may come back as a flat list or nested one level
        if data and isinstance(data[0], list):
            data = data[0]
        results = [(str(item["label"]), float(item["score"])) for item in data]
        results.sort(key=lambda r: r[1], reverse=True)
        return results

    async def is_toxic(self, text: str, threshold: Optional[float] = None) -> bool:
        """
        True when any toxic label scores above the threshold.
        Fail-open: classifier errors count as not toxic.
        """
        if not self.flags.use_toxicity_classifier or not text.strip():
            return False

        limit = self.settings.toxicity_threshold if threshold is None else threshold
        try:
            results = await self.classify(text)
        except Exception as e:
            logger.warning("Toxicity classifier unavailable, failing open: %s", e)
            return False

        return any(_TOXIC_LABEL_RE.search(label) and score > limit for label, score in results)
