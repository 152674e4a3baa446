"""
Users. The profile (name, preferences, interests, style, relationship level) is a JSON column.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase, utcnow


class User(RecordBase):
    __tablename__ = "users"

    profile: Mapped[dict] = mapped_column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
