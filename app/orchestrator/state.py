"""
Thread state management.

Threads, their selected categories, and the live message log.
Every appended message bumps threads.total_tokens by its estimate,
which is what the summarizer's trigger reads.
"""

import logging
from typing import Optional

from sqlalchemy import select, func, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.conversation import Thread, ThreadCategory, Message
from ..models.summary import ArchivedMessage
from ..services.summarization import update_thread_token_count
from ..services.tokens import estimate_tokens

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 80


class ThreadAccessError(PermissionError):
    """Thread exists but belongs to another user."""


async def get_thread(db: AsyncSession, thread_id: str, user_id: int) -> Optional[Thread]:
    """Owned thread or None. Raises ThreadAccessError for someone else's thread."""
    thread = await db.get(Thread, thread_id)
    if thread is None:
        return None
    if thread.user_id != user_id:
        raise ThreadAccessError(thread_id)
    return thread


async def get_or_create_thread(
    db: AsyncSession,
    user_id: int,
    thread_id: Optional[str] = None,
) -> Thread:
    """Get existing thread or create a new one."""
    if thread_id:
        thread = await get_thread(db, thread_id, user_id)
        if thread is not None:
            return thread

    thread = Thread(user_id=user_id) if not thread_id else Thread(id=thread_id, user_id=user_id)
    db.add(thread)
    await db.flush()
    logger.info("Created thread: %s (user=%s)", thread.id, user_id)
    return thread


async def list_threads(db: AsyncSession, user_id: int, limit: int = 50, offset: int = 0) -> list[Thread]:
    result = await db.execute(
        select(Thread)
        .where(Thread.user_id == user_id)
        .order_by(Thread.updated_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def delete_thread(db: AsyncSession, thread: Thread) -> None:
    """Delete a thread. Messages, summaries and archives go with it (FK cascade)."""
    await db.delete(thread)
    await db.flush()


async def get_thread_category_ids(db: AsyncSession, thread_id: str) -> list[int]:
    result = await db.execute(
        select(ThreadCategory.category_id)
        .where(ThreadCategory.thread_id == thread_id)
        .order_by(ThreadCategory.category_id.asc())
    )
    return [row[0] for row in result.all()]


async def set_thread_categories(db: AsyncSession, thread: Thread, category_ids: list[int]) -> None:
    """Replace the thread's category selection."""
    await db.execute(sql_delete(ThreadCategory).where(ThreadCategory.thread_id == thread.id))
    for category_id in dict.fromkeys(category_ids):
        db.add(ThreadCategory(thread_id=thread.id, category_id=category_id))
    await db.flush()


async def add_message(
    db: AsyncSession,
    thread: Thread,
    role: str,
    content: str,
    sources: Optional[list] = None,
) -> Message:
    """Append a message and add its estimate to the thread's running total."""
    # Numbering continues past archived messages, which keep theirs
    live_max = (await db.execute(
        select(func.max(Message.sequence_number)).where(Message.thread_id == thread.id)
    )).scalar_one_or_none()
    archived_max = (await db.execute(
        select(func.max(ArchivedMessage.sequence_number)).where(ArchivedMessage.thread_id == thread.id)
    )).scalar_one_or_none()
    seq = max(live_max or 0, archived_max or 0) + 1

    msg = Message(
        thread_id=thread.id,
        role=role,
        content=content,
        sources=sources,
        sequence_number=seq,
    )
    db.add(msg)
    await db.flush()
    await update_thread_token_count(db, thread.id, estimate_tokens(content))

    # Auto-generate title from first user message
    if role == "user" and seq == 1 and thread.title == "New thread":
        thread.title = content[:TITLE_MAX_CHARS].strip()
        if len(content) > TITLE_MAX_CHARS:
            thread.title += "..."
        await db.flush()

    return msg
