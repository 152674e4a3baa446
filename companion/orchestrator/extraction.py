"""
Memory and topic extraction strategies.

The finalizer only depends on `MemoryExtractor.extract()`. The keyword
extractor is pattern-based; an embedding- or model-based extractor can be
swapped in through the service context.
"""

import re
from abc import ABC, abstractmethod

SENTENCE_SPLIT = re.compile(r"[.!?]+")
MIN_SENTENCE_LENGTH = 10

MEMORY_CUES = ("remember", "like", "prefer", "love", "hate", "always", "never")

TOPIC_KEYWORDS = (
    "work", "job", "career", "hobby", "interest", "family", "friend",
    "relationship", "love", "travel", "food", "music", "movie", "book",
    "sport", "game", "dream", "goal", "plan", "memory", "childhood",
)


class MemoryExtractor(ABC):
    @abstractmethod
    def extract(self, text: str) -> list[str]:
        """Return candidate memory contents found in `text`."""
        ...


class KeywordMemoryExtractor(MemoryExtractor):
    """Sentences longer than a minimum length that contain a memory cue word."""

    def __init__(self, cues: tuple[str, ...] = MEMORY_CUES, min_length: int = MIN_SENTENCE_LENGTH):
        self.min_length = min_length
        self._cue_re = re.compile(r"\b(?:" + "|".join(map(re.escape, cues)) + r")\w*", re.IGNORECASE)

    def extract(self, text: str) -> list[str]:
        found = []
        seen = set()
        for raw in SENTENCE_SPLIT.split(text or ""):
            sentence = raw.strip()
            if len(sentence) <= self.min_length:
                continue
            if not self._cue_re.search(sentence):
                continue
            key = sentence.lower()
            if key in seen:
                continue
            seen.add(key)
            found.append(sentence)
        return found


def extract_topics(texts: list[str], keywords: tuple[str, ...] = TOPIC_KEYWORDS) -> list[str]:
    """Topic keywords mentioned anywhere in `texts`, in keyword-list order."""
    content = " ".join(texts).lower()
    return [k for k in keywords if re.search(rf"\b{re.escape(k)}", content)]
