"""
FastAPI application factory.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.database import init_db, close_db, session_scope
from .api.router import router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Policy Context Engine",
        description="Policy chat with skills, thread summarization and user memory",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if origins != ["*"] else ["*"],
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
        logger.info("Starting Policy Context Engine (env=%s)", settings.env)

        # Create database tables
        await init_db()

        from .core.flags import get_flags
        flags = get_flags()

        # Seed core skills
        if flags.seed_core_skills:
            from .services.skills import seed_core_skills
            async with session_scope() as session:
                added = await seed_core_skills(session, settings.skills_config_dir)
            logger.info("Core skills seeded: %d new", added)

        logger.info(
            "Flags: auth=%s llm=%s seed_core_skills=%s",
            flags.use_auth, flags.llm_provider, flags.seed_core_skills,
        )
        logger.info("Policy Context Engine is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        from .services.llm import close_client
        await close_client()
        await close_db()
        logger.info("Policy Context Engine shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
