"""
Admin API (administrator role required).

GET    /v1/admin/skills                 — List skills (filters: trigger_type, is_active, category_id)
POST   /v1/admin/skills                 — Create skill
GET    /v1/admin/skills/{id}            — Skill with linked categories
PATCH  /v1/admin/skills/{id}            — Partial update
DELETE /v1/admin/skills/{id}            — Delete (core skills refuse)
POST   /v1/admin/skills/{id}/toggle     — Flip active flag
POST   /v1/admin/skills/preview         — Which skills would fire for a message
POST   /v1/admin/skills/reset-core      — Re-seed core skills from config
GET    /v1/admin/settings/{name}        — skills | summarization | memory
PUT    /v1/admin/settings/{name}
GET    /v1/admin/memory/stats
GET    /v1/admin/summarization/stats
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.config import get_settings
from ..core.dependencies import require_admin, get_db, get_runtime_settings
from ..models.skill import Skill, TriggerType
from ..services.memory import get_memory_stats
from ..services.settings_store import (
    MemorySettings,
    RuntimeSettings,
    SkillsSettings,
    SummarizationSettings,
    get_runtime_setting,
    save_runtime_setting,
)
from ..services.skill_resolver import preview_skill_resolution
from ..services.skills import (
    CoreSkillProtectedError,
    DuplicateSkillError,
    SkillCreate,
    SkillNotFoundError,
    SkillUpdate,
    create_skill,
    delete_skill,
    get_category_ids_for_skill,
    get_skill,
    list_skills,
    reset_core_skills,
    toggle_skill_active,
    update_skill,
)
from ..services.summarization import get_summarization_stats

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"])

SETTINGS_BY_NAME = {
    "skills": SkillsSettings,
    "summarization": SummarizationSettings,
    "memory": MemorySettings,
}


class SkillOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    prompt_content: str
    trigger_type: str
    trigger_value: Optional[str] = None
    category_restricted: bool
    is_index: bool
    priority: int
    is_active: bool
    is_core: bool
    token_estimate: Optional[int] = None
    category_ids: list[int] = []
    updated_by: str
    updated_at: str


class PreviewRequest(BaseModel):
    message: str
    category_ids: list[int] = []


def _skill_out(skill: Skill, category_ids: list[int]) -> SkillOut:
    return SkillOut(
        id=skill.id,
        name=skill.name,
        description=skill.description,
        prompt_content=skill.prompt_content,
        trigger_type=skill.trigger_type,
        trigger_value=skill.trigger_value,
        category_restricted=skill.category_restricted,
        is_index=skill.is_index,
        priority=skill.priority,
        is_active=skill.is_active,
        is_core=skill.is_core,
        token_estimate=skill.token_estimate,
        category_ids=category_ids,
        updated_by=skill.updated_by,
        updated_at=skill.updated_at.isoformat() if skill.updated_at else "",
    )


def _actor(user: AuthenticatedUser) -> str:
    return user.email or str(user.user_id)


# ── Skills ───────────────────────────────────────────────────────────

@admin_router.get("/skills", response_model=list[SkillOut])
async def get_skills(
    trigger_type: Optional[TriggerType] = None,
    is_active: Optional[bool] = None,
    category_id: Optional[int] = None,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    skills = await list_skills(db, trigger_type=trigger_type, is_active=is_active, category_id=category_id)
    return [_skill_out(s, await get_category_ids_for_skill(db, s.id)) for s in skills]


@admin_router.post("/skills", response_model=SkillOut, status_code=201)
async def post_skill(
    data: SkillCreate,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        skill = await create_skill(db, data, created_by=_actor(user))
    except DuplicateSkillError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _skill_out(skill, await get_category_ids_for_skill(db, skill.id))


@admin_router.post("/skills/preview")
async def preview_skills(
    request: PreviewRequest,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    runtime: RuntimeSettings = Depends(get_runtime_settings),
):
    return await preview_skill_resolution(db, runtime.skills, request.category_ids, request.message)


@admin_router.post("/skills/reset-core")
async def reset_core(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    seeded = await reset_core_skills(db, get_settings().skills_config_dir)
    logger.info("Core skills reset by %s (%d seeded)", _actor(user), seeded)
    return {"seeded": seeded}


@admin_router.get("/skills/{skill_id}", response_model=SkillOut)
async def get_one_skill(
    skill_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    skill = await get_skill(db, skill_id)
    if skill is None:
        raise HTTPException(status_code=404, detail="Skill not found")
    return _skill_out(skill, await get_category_ids_for_skill(db, skill.id))


@admin_router.patch("/skills/{skill_id}", response_model=SkillOut)
async def patch_skill(
    skill_id: int,
    data: SkillUpdate,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        skill = await update_skill(db, skill_id, data, updated_by=_actor(user))
    except SkillNotFoundError:
        raise HTTPException(status_code=404, detail="Skill not found")
    except DuplicateSkillError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _skill_out(skill, await get_category_ids_for_skill(db, skill.id))


@admin_router.delete("/skills/{skill_id}")
async def remove_skill(
    skill_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        await delete_skill(db, skill_id)
    except SkillNotFoundError:
        raise HTTPException(status_code=404, detail="Skill not found")
    except CoreSkillProtectedError as e:
        raise HTTPException(status_code=409, detail=f"{e}. Deactivate it instead.")
    return {"deleted": True, "id": skill_id}


@admin_router.post("/skills/{skill_id}/toggle")
async def toggle_skill(
    skill_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        active = await toggle_skill_active(db, skill_id, updated_by=_actor(user))
    except SkillNotFoundError:
        raise HTTPException(status_code=404, detail="Skill not found")
    return {"id": skill_id, "is_active": active}


# ── Runtime settings ─────────────────────────────────────────────────

def _settings_model(name: str):
    model_cls = SETTINGS_BY_NAME.get(name)
    if model_cls is None:
        raise HTTPException(status_code=404, detail=f"Unknown settings group '{name}'")
    return model_cls


@admin_router.get("/settings/{name}")
async def get_settings_group(
    name: str,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    value = await get_runtime_setting(db, _settings_model(name))
    return value.model_dump(by_alias=True)


@admin_router.put("/settings/{name}")
async def put_settings_group(
    name: str,
    payload: dict,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Partial payloads are merged over the stored value."""
    model_cls = _settings_model(name)
    current = await get_runtime_setting(db, model_cls)
    try:
        value = model_cls.model_validate({**current.model_dump(by_alias=True), **payload})
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        )

    await save_runtime_setting(db, value, updated_by=_actor(user))
    return value.model_dump(by_alias=True)


# ── Stats ────────────────────────────────────────────────────────────

@admin_router.get("/memory/stats")
async def memory_stats(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_memory_stats(db)


@admin_router.get("/summarization/stats")
async def summarization_stats(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_summarization_stats(db)
