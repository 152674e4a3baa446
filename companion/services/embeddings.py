"""
Embedding backend client (OpenAI-compatible /embeddings endpoint).

Returns one L2-normalized vector per input text. Vectors are normalized here
as well, so cosine similarity reduces to a dot product.
"""

import logging
import math
import time

import httpx

from ..core.config import Settings
from ..core.errors import DependencyUnavailable
from ..core.flags import FeatureFlags
from .llm import retry_request

logger = logging.getLogger(__name__)


def l2_normalize(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Dot product of two L2-normalized vectors. Mismatched dimensions score 0."""
    if len(a) != len(b):
        return 0.0
    return sum(x * y for x, y in zip(a, b))


class EmbeddingClient:
    def __init__(self, settings: Settings, flags: FeatureFlags, http: httpx.AsyncClient):
        self.settings = settings
        self.flags = flags
        self.http = http

    @property
    def available(self) -> bool:
        return self.flags.use_embeddings and bool(self.settings.embedding_base_url)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts. Raises DependencyUnavailable on any failure."""
        if not self.available:
            raise DependencyUnavailable("Embeddings disabled", error_code="embeddings_disabled")
        if not texts:
            return []

        url = f"{self.settings.embedding_base_url.rstrip('/')}/embeddings"
        start = time.monotonic()
        try:
            resp = await retry_request(
                self.http, "POST", url, label="Embeddings",
                json={"model": self.settings.embedding_model, "input": texts},
                headers={"Authorization": f"Bearer {self.settings.embedding_api_key}"},
            )
            data = resp.json().get("data", [])
        except Exception as e:
            logger.warning("Embedding request failed: %s", e)
            raise DependencyUnavailable("Embedding backend unavailable") from e

        if len(data) != len(texts):
            raise DependencyUnavailable(
                "Embedding backend returned a partial batch",
                details={"expected": len(texts), "received": len(data)},
            )

        ordered = sorted(data, key=lambda d: d.get("index", 0))
        vectors = [l2_normalize([float(v) for v in d["embedding"]]) for d in ordered]
        logger.debug("Embedded %d texts in %dms", len(texts), int((time.monotonic() - start) * 1000))
        return vectors
