"""
User profiles — load, create and partially update the profile JSON on users.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.user import User
from ..orchestrator.types import ProfileUpdate, RelationshipLevel, UserProfile

logger = logging.getLogger(__name__)


def _to_profile(user: User) -> UserProfile:
    data = user.profile or {}
    level = data.get("relationship_level") or RelationshipLevel.NEW.value
    try:
        level = RelationshipLevel(level)
    except ValueError:
        level = RelationshipLevel.NEW
    return UserProfile(
        id=user.id,
        name=data.get("name") or None,
        preferences=data.get("preferences") or {},
        interests=data.get("interests") or [],
        communication_style=data.get("communication_style") or None,
        relationship_level=level,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


async def get_profile(db: AsyncSession, user_id: str) -> Optional[UserProfile]:
    """Profile for a user, or None if the user has never been seen."""
    user = await db.get(User, user_id)
    return _to_profile(user) if user else None


async def ensure_user(db: AsyncSession, user_id: str) -> User:
    """Get the user row, creating it with an empty profile on first interaction."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(id=user_id, profile=UserProfile(id=user_id).to_json())
        db.add(user)
        await db.flush()
        logger.info("Created user: %s", user_id)
    return user


async def update_profile(db: AsyncSession, user_id: str, updates: ProfileUpdate) -> UserProfile:
    """
    Apply a partial update. Preferences merge key-wise; every other provided
    field replaces the stored value.
    """
    user = await ensure_user(db, user_id)
    current = _to_profile(user)

    merged = current.model_copy(update={
        "name": updates.name if updates.name is not None else current.name,
        "preferences": {**current.preferences, **(updates.preferences or {})},
        "interests": updates.interests if updates.interests is not None else current.interests,
        "communication_style": (
            updates.communication_style
            if updates.communication_style is not None else current.communication_style
        ),
        "relationship_level": updates.relationship_level or current.relationship_level,
    })

    user.profile = merged.to_json()
    await db.flush()
    await db.refresh(user)
    logger.debug("Updated profile for %s", user_id)
    return _to_profile(user)


def format_profile_for_prompt(profile: Optional[UserProfile]) -> str:
    if profile is None or profile.is_empty:
        return ""

    parts = []
    if profile.name:
        parts.append(f"Name: {profile.name}")
    if profile.interests:
        parts.append(f"Interests: {', '.join(profile.interests)}")
    if profile.communication_style:
        parts.append(f"Communication style: {profile.communication_style}")
    parts.append(f"Relationship level: {profile.relationship_level.value}")
    if profile.preferences:
        prefs = "; ".join(f"{k}: {v}" for k, v in profile.preferences.items())
        parts.append(f"Preferences: {prefs}")
    return "User profile:\n" + "\n".join(f"- {p}" for p in parts)
