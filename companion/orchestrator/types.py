"""
Domain types shared by the pipeline, the stores and the API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class RelationshipLevel(str, Enum):
    NEW = "new"
    ACQUAINTANCE = "acquaintance"
    FRIEND = "friend"
    CLOSE = "close"
    INTIMATE = "intimate"


class MemoryKind(str, Enum):
    FACT = "fact"
    MOMENT = "moment"
    PREFERENCE = "preference"
    MEMORY = "memory"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    DEVELOPER = "developer"


def clamp_unit(value: float) -> float:
    """Clamp importance / confidence values to [0, 1]."""
    return max(0.0, min(1.0, float(value)))


class UserProfile(BaseModel):
    id: str = ""
    name: Optional[str] = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    interests: list[str] = Field(default_factory=list)
    communication_style: Optional[str] = None
    relationship_level: RelationshipLevel = RelationshipLevel.NEW
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.preferences or self.interests or self.communication_style)

    def to_json(self) -> dict:
        """Shape stored in users.profile."""
        return {
            "name": self.name,
            "preferences": self.preferences,
            "interests": self.interests,
            "communication_style": self.communication_style,
            "relationship_level": self.relationship_level.value,
        }


class ProfileUpdate(BaseModel):
    """Partial profile update. Unset fields keep their stored value."""
    name: Optional[str] = None
    preferences: Optional[dict[str, Any]] = None
    interests: Optional[list[str]] = None
    communication_style: Optional[str] = Field(default=None, alias="communicationStyle")
    relationship_level: Optional[RelationshipLevel] = Field(default=None, alias="relationshipLevel")

    model_config = {"populate_by_name": True}


class MemoryRecord(BaseModel):
    id: str
    user_id: str
    kind: MemoryKind
    content: str
    importance: float = 0.5
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator("importance")
    @classmethod
    def _clamp_importance(cls, v: float) -> float:
        return clamp_unit(v)


class LookupStatus(str, Enum):
    RANKED = "ranked"       # similarity-ranked
    DEGRADED = "degraded"   # recency order, embeddings unavailable
    EMPTY = "empty"         # user has no memories


@dataclass
class MemoryLookup:
    """Outcome of a memory retrieval. The fallback path is a value, not an exception."""

    status: LookupStatus
    memories: list[MemoryRecord] = field(default_factory=list)
    reason: Optional[str] = None

    @classmethod
    def ranked(cls, memories: list[MemoryRecord]) -> "MemoryLookup":
        return cls(LookupStatus.RANKED, memories)

    @classmethod
    def degraded(cls, memories: list[MemoryRecord], reason: str) -> "MemoryLookup":
        if not memories:
            return cls.empty(reason)
        return cls(LookupStatus.DEGRADED, memories, reason)

    @classmethod
    def empty(cls, reason: Optional[str] = None) -> "MemoryLookup":
        return cls(LookupStatus.EMPTY, [], reason)


@dataclass
class TurnPlan:
    """Delivery strategy for one reply. Produced before generation, consumed once."""

    intent: str = "clarify"
    tone: str = "neutral"
    brevity: str = "medium"
    empathy: str = "medium"
    beats: list[str] = field(default_factory=lambda: ["answer"])
    avoid: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    reasoning: str = ""


@dataclass
class TurnRequest:
    user_id: str
    text: str
    convo_id: Optional[str] = None
    voice_enabled: bool = False
