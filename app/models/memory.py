"""
User memory persistence.

One row per (user, category). category_id NULL is the user's global memory.
The fact list is replaced wholesale on every extraction pass.
"""

from typing import Optional

from sqlalchemy import Index, Integer, JSON, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import TimestampMixin


class UserMemory(TimestampMixin, Base):
    __tablename__ = "user_memories"
    __table_args__ = (
        UniqueConstraint("user_id", "category_id", name="uq_user_memories_user_category"),
        # The constraint above treats NULLs as distinct; this covers the global row
        Index(
            "uq_user_memories_global",
            "user_id",
            unique=True,
            sqlite_where=text("category_id IS NULL"),
            postgresql_where=text("category_id IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    facts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
