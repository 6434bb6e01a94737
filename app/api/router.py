"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import get_user

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "policy-context-engine"}


# ── Auth config (no auth) ───────────────────────────────────────────

@router.get("/auth/config")
async def auth_config():
    from ..core.config import get_settings
    from ..core.flags import get_flags

    flags = get_flags()
    if not flags.use_auth:
        return {"auth_enabled": False, "message": "Dev mode, no auth required"}

    settings = get_settings()
    return {
        "auth_enabled": True,
        "domain": settings.auth_domain,
        "audience": settings.auth_audience,
    }


# ── V1 routes (auth required) ───────────────────────────────────────

from .chat import chat_router
from .threads import threads_router
from .memory import memory_router
from .admin import admin_router

router.include_router(chat_router, prefix="/v1", dependencies=[Depends(get_user)])
router.include_router(threads_router, prefix="/v1", dependencies=[Depends(get_user)])
router.include_router(memory_router, prefix="/v1", dependencies=[Depends(get_user)])
# Admin routes check the role themselves via require_admin
router.include_router(admin_router, prefix="/v1")
