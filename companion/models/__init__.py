"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import RecordBase
from .user import User
from .conversation import Conversation, Message
from .memory import Memory

__all__ = [
    "RecordBase",
    "User",
    "Conversation", "Message",
    "Memory",
]
