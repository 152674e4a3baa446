"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter

router = APIRouter()


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "companion"}


# ── V1 routes ────────────────────────────────────────────────────────

from .chat import chat_router
from .memories import memories_router
from .profile import profile_router
from .voice import voice_router

router.include_router(chat_router, prefix="/v1")
router.include_router(profile_router, prefix="/v1")
router.include_router(memories_router, prefix="/v1")
router.include_router(voice_router, prefix="/v1")
