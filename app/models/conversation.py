"""
Threads and live messages.

threads.total_tokens is a running estimate bumped on every appended message;
the summarizer compares it against the configured threshold.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Integer, Boolean, JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import TimestampMixin, new_uuid, utcnow


class Thread(TimestampMixin, Base):
    __tablename__ = "threads"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_uuid)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False, default="New thread")
    is_summarized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ThreadCategory(Base):
    __tablename__ = "thread_categories"

    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("threads.id", ondelete="CASCADE"), primary_key=True
    )
    category_id: Mapped[int] = mapped_column(Integer, primary_key=True)


class Message(Base):
    __tablename__ = "messages"

    # Ids are shared with archived_messages, so they are generated here, never by the DB
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_uuid)
    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String, nullable=False)  # user, assistant, tool
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sources: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
