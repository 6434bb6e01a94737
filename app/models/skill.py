"""
Skills: reusable prompt fragments injected into the model context.

A skill fires on one trigger kind:
  always   → every turn
  category → the thread selected one of its linked categories (index skills)
  keyword  → a comma-separated keyword in trigger_value appears in the message
"""

from enum import Enum
from typing import Optional

from sqlalchemy import String, Text, Integer, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import TimestampMixin


class TriggerType(str, Enum):
    ALWAYS = "always"
    CATEGORY = "category"
    KEYWORD = "keyword"


class Skill(TimestampMixin, Base):
    __tablename__ = "skills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt_content: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    trigger_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    category_restricted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_index: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Lower number = higher precedence
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Core skills come from config/skills.json and can only be deactivated
    is_core: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    token_estimate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False, default="system")
    updated_by: Mapped[str] = mapped_column(String, nullable=False, default="system")


class SkillCategory(Base):
    """Skill ↔ category link. Categories themselves belong to the host application."""

    __tablename__ = "skill_categories"

    skill_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("skills.id", ondelete="CASCADE"), primary_key=True
    )
    category_id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
