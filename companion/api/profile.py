"""
Profile API.

GET /v1/profile/{user_id} — Read a user's profile
PUT /v1/profile/{user_id} — Partial update (preferences merge key-wise)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..orchestrator.types import ProfileUpdate, UserProfile
from ..services.profile import get_profile, update_profile

logger = logging.getLogger(__name__)

profile_router = APIRouter(prefix="/profile", tags=["profile"])


@profile_router.get("/{user_id}", response_model=UserProfile)
async def read_profile(user_id: str, db: AsyncSession = Depends(get_db)):
    profile = await get_profile(db, user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


@profile_router.put("/{user_id}", response_model=UserProfile)
async def write_profile(
    user_id: str,
    updates: ProfileUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Create the user on first update. Unspecified fields keep their stored values."""
    profile = await update_profile(db, user_id, updates)
    logger.info("Profile updated: %s", user_id)
    return profile
