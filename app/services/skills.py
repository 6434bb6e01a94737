"""
Skill store: CRUD over skills and their category links, plus core seeding.

Core skills are defined in config/skills.json (manifest) with one markdown
prompt file each under config/skills/. They are seeded with is_core=True and
can be deactivated but never deleted.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.skill import Skill, SkillCategory, TriggerType
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100


class SkillNotFoundError(LookupError):
    pass


class CoreSkillProtectedError(Exception):
    pass


class DuplicateSkillError(Exception):
    pass


class SkillCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    prompt_content: str = Field(min_length=1)
    trigger_type: TriggerType
    trigger_value: Optional[str] = None
    category_restricted: bool = False
    is_index: bool = False
    priority: int = DEFAULT_PRIORITY
    category_ids: list[int] = []

    @model_validator(mode="after")
    def _keyword_needs_value(self):
        if self.trigger_type == TriggerType.KEYWORD and not (self.trigger_value or "").strip():
            raise ValueError("keyword skills need a comma-separated trigger_value")
        return self


class SkillUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    prompt_content: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_value: Optional[str] = None
    category_restricted: Optional[bool] = None
    is_index: Optional[bool] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    category_ids: Optional[list[int]] = None


# ── Reads ────────────────────────────────────────────────────────────

async def get_skill(db: AsyncSession, skill_id: int) -> Optional[Skill]:
    return await db.get(Skill, skill_id)


async def list_skills(
    db: AsyncSession,
    trigger_type: Optional[TriggerType] = None,
    is_active: Optional[bool] = None,
    category_id: Optional[int] = None,
) -> list[Skill]:
    """All skills, optionally filtered. Ordered by priority, then name."""
    query = select(Skill)
    if trigger_type is not None:
        query = query.where(Skill.trigger_type == TriggerType(trigger_type).value)
    if is_active is not None:
        query = query.where(Skill.is_active == is_active)
    if category_id is not None:
        query = query.where(
            Skill.id.in_(
                select(SkillCategory.skill_id).where(SkillCategory.category_id == category_id)
            )
        )
    result = await db.execute(query.order_by(Skill.priority.asc(), Skill.name.asc()))
    return list(result.scalars().all())


async def get_active_skills_by_trigger(db: AsyncSession, trigger_type: TriggerType) -> list[Skill]:
    result = await db.execute(
        select(Skill)
        .where(Skill.trigger_type == trigger_type.value, Skill.is_active == True)  # noqa: E712
        .order_by(Skill.priority.asc(), Skill.id.asc())
    )
    return list(result.scalars().all())


async def get_index_skills_for_categories(db: AsyncSession, category_ids: list[int]) -> list[Skill]:
    """Active category-trigger index skills linked to any of the given categories."""
    if not category_ids:
        return []
    result = await db.execute(
        select(Skill)
        .where(
            Skill.id.in_(
                select(SkillCategory.skill_id).where(SkillCategory.category_id.in_(category_ids))
            ),
            Skill.is_active == True,  # noqa: E712
            Skill.trigger_type == TriggerType.CATEGORY.value,
            Skill.is_index == True,  # noqa: E712
        )
        .order_by(Skill.priority.asc(), Skill.id.asc())
    )
    return list(result.scalars().all())


async def get_category_ids_for_skills(
    db: AsyncSession, skill_ids: list[int]
) -> dict[int, set[int]]:
    """skill_id → linked category ids (missing key = no links)."""
    if not skill_ids:
        return {}
    result = await db.execute(
        select(SkillCategory.skill_id, SkillCategory.category_id)
        .where(SkillCategory.skill_id.in_(skill_ids))
    )
    links: dict[int, set[int]] = {}
    for skill_id, category_id in result.all():
        links.setdefault(skill_id, set()).add(category_id)
    return links


async def get_category_ids_for_skill(db: AsyncSession, skill_id: int) -> list[int]:
    links = await get_category_ids_for_skills(db, [skill_id])
    return sorted(links.get(skill_id, set()))


# ── Writes ───────────────────────────────────────────────────────────

async def _set_categories(db: AsyncSession, skill_id: int, category_ids: list[int]) -> None:
    await db.execute(sql_delete(SkillCategory).where(SkillCategory.skill_id == skill_id))
    for category_id in dict.fromkeys(category_ids):
        db.add(SkillCategory(skill_id=skill_id, category_id=category_id))


async def _name_taken(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> bool:
    query = select(Skill.id).where(Skill.name == name)
    if exclude_id is not None:
        query = query.where(Skill.id != exclude_id)
    return (await db.execute(query)).first() is not None


async def create_skill(db: AsyncSession, data: SkillCreate, created_by: str) -> Skill:
    if await _name_taken(db, data.name):
        raise DuplicateSkillError(f"A skill named '{data.name}' already exists")

    skill = Skill(
        name=data.name,
        description=data.description,
        prompt_content=data.prompt_content,
        trigger_type=data.trigger_type.value,
        trigger_value=data.trigger_value,
        category_restricted=data.category_restricted,
        is_index=data.is_index,
        priority=data.priority,
        is_active=True,
        is_core=False,
        token_estimate=estimate_tokens(data.prompt_content),
        created_by=created_by,
        updated_by=created_by,
    )
    db.add(skill)
    await db.flush()

    if data.category_ids:
        await _set_categories(db, skill.id, data.category_ids)
        await db.flush()

    logger.info("Skill created: %s (id=%d, trigger=%s)", skill.name, skill.id, skill.trigger_type)
    return skill


async def update_skill(db: AsyncSession, skill_id: int, data: SkillUpdate, updated_by: str) -> Skill:
    skill = await db.get(Skill, skill_id)
    if skill is None:
        raise SkillNotFoundError(skill_id)

    changes = data.model_dump(exclude_unset=True)
    category_ids = changes.pop("category_ids", None)

    if "name" in changes and await _name_taken(db, changes["name"], exclude_id=skill_id):
        raise DuplicateSkillError(f"A skill named '{changes['name']}' already exists")

    for field_name, value in changes.items():
        if field_name == "trigger_type" and value is not None:
            value = TriggerType(value).value
        setattr(skill, field_name, value)

    if "prompt_content" in changes:
        skill.token_estimate = estimate_tokens(skill.prompt_content)
    skill.updated_by = updated_by

    if category_ids is not None:
        await _set_categories(db, skill_id, category_ids)

    await db.flush()
    return skill


async def delete_skill(db: AsyncSession, skill_id: int) -> None:
    """Hard delete. Core skills refuse; deactivate them instead."""
    skill = await db.get(Skill, skill_id)
    if skill is None:
        raise SkillNotFoundError(skill_id)
    if skill.is_core:
        raise CoreSkillProtectedError(f"Cannot delete core skill '{skill.name}'")

    await db.execute(sql_delete(SkillCategory).where(SkillCategory.skill_id == skill_id))
    await db.delete(skill)
    await db.flush()
    logger.info("Skill deleted: %s (id=%d)", skill.name, skill_id)


async def toggle_skill_active(db: AsyncSession, skill_id: int, updated_by: str) -> bool:
    """Flip is_active. Returns the new state."""
    skill = await db.get(Skill, skill_id)
    if skill is None:
        raise SkillNotFoundError(skill_id)
    skill.is_active = not skill.is_active
    skill.updated_by = updated_by
    await db.flush()
    return skill.is_active


# ── Core skill seeding ───────────────────────────────────────────────

@dataclass
class CoreSkillSpec:
    name: str
    description: str
    prompt_content: str
    trigger_type: TriggerType
    trigger_value: Optional[str]
    priority: int


def load_skill_manifest(config_dir: str | Path) -> list[CoreSkillSpec]:
    """
    Read config_dir/skills.json. Each entry names a prompt file relative to
    config_dir/skills/. Entries whose prompt file is missing are skipped.
    """
    config_dir = Path(config_dir)
    manifest_path = config_dir / "skills.json"
    if not manifest_path.exists():
        logger.info("No skill manifest at %s", manifest_path)
        return []

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    entries = []
    for entry in manifest.get("skills", []):
        prompt_path = config_dir / "skills" / entry["file"]
        if not prompt_path.exists():
            logger.warning("Skill '%s': prompt file %s not found, skipping", entry["name"], prompt_path)
            continue
        entries.append(CoreSkillSpec(
            name=entry["name"],
            description=entry.get("description", ""),
            prompt_content=prompt_path.read_text(encoding="utf-8").strip(),
            trigger_type=TriggerType(entry.get("triggerType", "always")),
            trigger_value=entry.get("triggerValue"),
            priority=int(entry.get("priority", DEFAULT_PRIORITY)),
        ))
    return entries


async def seed_core_skills(db: AsyncSession, config_dir: str | Path) -> int:
    """Insert manifest skills that don't exist yet (by name). Returns how many were added."""
    entries = load_skill_manifest(config_dir)
    if not entries:
        return 0

    added = 0
    for item in entries:
        if await _name_taken(db, item.name):
            continue
        db.add(Skill(
            name=item.name,
            description=item.description,
            prompt_content=item.prompt_content,
            trigger_type=item.trigger_type.value,
            trigger_value=item.trigger_value,
            priority=item.priority,
            is_active=True,
            is_core=True,
            token_estimate=estimate_tokens(item.prompt_content),
            created_by="system",
            updated_by="system",
        ))
        added += 1

    await db.flush()
    logger.info("Seeded %d core skills (%d in manifest)", added, len(entries))
    return added


async def reset_core_skills(db: AsyncSession, config_dir: str | Path) -> int:
    """Drop every core skill and re-seed from the manifest."""
    result = await db.execute(select(Skill.id).where(Skill.is_core == True))  # noqa: E712
    core_ids = [row[0] for row in result.all()]
    if core_ids:
        await db.execute(sql_delete(SkillCategory).where(SkillCategory.skill_id.in_(core_ids)))
        await db.execute(sql_delete(Skill).where(Skill.id.in_(core_ids)))
        await db.flush()
    logger.info("Removed %d core skills", len(core_ids))
    return await seed_core_skills(db, config_dir)
