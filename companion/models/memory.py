"""
Long-term user memory.

Memories belong to a user, never to a conversation. They are only ever created.
Kinds: fact, moment, preference, memory
"""

from typing import Optional

from sqlalchemy import String, Text, Float, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class Memory(RecordBase):
    __tablename__ = "memories"

    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    importance: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # L2-normalized vector, absent when the embedding backend was unavailable at write time
    embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
