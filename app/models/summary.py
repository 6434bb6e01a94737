"""
Thread summaries and the messages they replaced.

Both tables are append-only. The current summary of a thread is its newest row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Integer, JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import utcnow


class ThreadSummary(Base):
    __tablename__ = "thread_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    messages_summarized: Mapped[int] = mapped_column(Integer, nullable=False)
    tokens_before: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tokens_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ArchivedMessage(Base):
    __tablename__ = "archived_messages"

    # Same id the message had in the live table
    id: Mapped[str] = mapped_column(String, primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String, ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sources: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    summary_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("thread_summaries.id", ondelete="SET NULL"), nullable=True, index=True
    )
