"""
Runtime settings: the three admin-editable structs.

Stored as JSON text in the settings table under fixed keys, camelCase on
the wire. Loaded once per turn into a RuntimeSettings bundle that is passed
explicitly to the resolver, the summarizer and the memory builder.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.setting import Setting

logger = logging.getLogger(__name__)


class _SettingsModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SkillsSettings(_SettingsModel):
    enabled: bool = False
    max_total_tokens: int = Field(default=3000, ge=0)
    debug_mode: bool = False


class SummarizationSettings(_SettingsModel):
    enabled: bool = False
    token_threshold: int = Field(default=100000, ge=1)
    keep_recent_messages: int = Field(default=10, ge=0)
    summary_max_tokens: int = Field(default=2000, ge=1)
    archive_original_messages: bool = True


class MemorySettings(_SettingsModel):
    enabled: bool = False
    extraction_threshold: int = Field(default=5, ge=0)
    max_facts_per_category: int = Field(default=20, ge=1)
    auto_extract_on_thread_end: bool = True


SETTINGS_KEYS: dict[str, type[_SettingsModel]] = {
    "skills-settings": SkillsSettings,
    "summarization-settings": SummarizationSettings,
    "memory-settings": MemorySettings,
}

T = TypeVar("T", bound=_SettingsModel)


def _key_for(model_cls: type[_SettingsModel]) -> str:
    for key, cls in SETTINGS_KEYS.items():
        if cls is model_cls:
            return key
    raise KeyError(model_cls.__name__)


async def get_runtime_setting(db: AsyncSession, model_cls: type[T]) -> T:
    """Stored JSON merged over the defaults. Bad rows fall back to defaults."""
    key = _key_for(model_cls)
    row = await db.get(Setting, key)
    if row is None:
        return model_cls()

    try:
        return model_cls.model_validate(json.loads(row.value))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning("Ignoring malformed setting %s: %s", key, e)
        return model_cls()


async def save_runtime_setting(
    db: AsyncSession,
    value: _SettingsModel,
    updated_by: Optional[str] = None,
) -> None:
    """Upsert one struct. Last write wins, no history kept."""
    key = _key_for(type(value))
    encoded = value.model_dump_json(by_alias=True)

    row = await db.get(Setting, key)
    if row is None:
        db.add(Setting(key=key, value=encoded, updated_by=updated_by))
    else:
        row.value = encoded
        row.updated_by = updated_by
    await db.flush()
    logger.info("Setting %s updated by %s", key, updated_by or "unknown")


@dataclass(frozen=True)
class RuntimeSettings:
    skills: SkillsSettings
    summarization: SummarizationSettings
    memory: MemorySettings


async def load_runtime_settings(db: AsyncSession) -> RuntimeSettings:
    """Read all three structs in one query."""
    result = await db.execute(select(Setting).where(Setting.key.in_(list(SETTINGS_KEYS))))
    rows = {row.key: row.value for row in result.scalars().all()}

    loaded = {}
    for key, cls in SETTINGS_KEYS.items():
        raw = rows.get(key)
        try:
            loaded[key] = cls.model_validate(json.loads(raw)) if raw else cls()
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Ignoring malformed setting %s: %s", key, e)
            loaded[key] = cls()

    return RuntimeSettings(
        skills=loaded["skills-settings"],
        summarization=loaded["summarization-settings"],
        memory=loaded["memory-settings"],
    )
