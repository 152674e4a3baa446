"""
FastAPI application factory.
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.router import router
from .core.config import get_settings
from .core.database import close_db, init_db
from .core.flags import get_flags
from .core.redis import close_redis
from .services.context import ServiceContext, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[ServiceContext] = None) -> FastAPI:
    """
    Build the app. With `services` given (tests), startup uses them as-is
    and skips table creation; otherwise both are set up from settings.
    """
    settings = get_settings()

    app = FastAPI(
        title="Companion",
        description="Streaming conversational companion",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )
    app.state.services = services

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting companion (env=%s)", settings.env)

        if app.state.services is None:
            await init_db()
            app.state.services = build_services()

        flags = get_flags()
        logger.info(
            "Flags: redis=%s embeddings=%s toxicity=%s voice=%s transcription=%s planner=%s llm=%s",
            flags.use_redis, flags.use_embeddings, flags.use_toxicity_classifier,
            flags.use_voice, flags.use_transcription, flags.use_planner, flags.llm_provider,
        )
        logger.info("Companion is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.services is not None:
            await app.state.services.aclose()
        await close_db()
        await close_redis()
        logger.info("Companion shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
