"""
Threads API.

GET    /v1/threads                   — List user threads
GET    /v1/threads/{thread_id}       — Thread with live messages
DELETE /v1/threads/{thread_id}       — Delete a thread
GET    /v1/threads/{thread_id}/summary  — Current summary + history
POST   /v1/threads/{thread_id}/summary  — Run a summarization pass now
GET    /v1/threads/{thread_id}/archive  — Messages folded into summaries
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_user, get_db, get_runtime_settings
from ..models.conversation import Thread
from ..orchestrator.state import (
    ThreadAccessError,
    delete_thread,
    get_thread,
    get_thread_category_ids,
    list_threads,
)
from ..services.settings_store import RuntimeSettings
from ..services.summarization import (
    ThreadSummaryRecord,
    get_archived_messages,
    get_messages_for_thread,
    get_thread_summary_history,
    summarize_thread,
)

logger = logging.getLogger(__name__)

threads_router = APIRouter(prefix="/threads", tags=["threads"])


class ThreadOut(BaseModel):
    id: str
    title: str
    is_summarized: bool
    total_tokens: int
    created_at: str
    updated_at: str


class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    sources: Optional[list] = None
    sequence_number: int
    created_at: str


class ThreadDetail(ThreadOut):
    category_ids: list[int] = []
    messages: list[MessageOut] = []


class SummaryOut(BaseModel):
    id: int
    summary: str
    messages_summarized: int
    tokens_before: Optional[int] = None
    tokens_after: Optional[int] = None
    created_at: str


class SummaryDetail(BaseModel):
    has_summary: bool
    summary: Optional[SummaryOut] = None
    history: list[SummaryOut] = []


class SummarizeOut(BaseModel):
    status: str
    reason: str = ""
    summary: Optional[SummaryOut] = None


class ArchivedMessageOut(BaseModel):
    id: str
    role: str
    content: str
    sources: Optional[list] = None
    created_at: str
    archived_at: str
    summary_id: Optional[int] = None


def _thread_out(t: Thread) -> dict:
    return dict(
        id=t.id,
        title=t.title,
        is_summarized=t.is_summarized,
        total_tokens=t.total_tokens,
        created_at=t.created_at.isoformat() if t.created_at else "",
        updated_at=t.updated_at.isoformat() if t.updated_at else "",
    )


def _summary_out(s: ThreadSummaryRecord) -> SummaryOut:
    return SummaryOut(
        id=s.id,
        summary=s.summary,
        messages_summarized=s.messages_summarized,
        tokens_before=s.tokens_before,
        tokens_after=s.tokens_after,
        created_at=s.created_at.isoformat(),
    )


async def _owned_thread(db: AsyncSession, thread_id: str, user: AuthenticatedUser) -> Thread:
    """404 if missing; 403 if someone else's, unless the caller is an admin."""
    try:
        thread = await get_thread(db, thread_id, user.user_id)
    except ThreadAccessError:
        if not user.is_admin:
            raise HTTPException(status_code=403, detail="Access denied")
        thread = await db.get(Thread, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return thread


@threads_router.get("", response_model=list[ThreadOut])
async def get_threads(
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
    limit: int = 50,
    offset: int = 0,
):
    """List threads for the current user."""
    threads = await list_threads(db, user.user_id, limit=limit, offset=offset)
    return [ThreadOut(**_thread_out(t)) for t in threads]


@threads_router.get("/{thread_id}", response_model=ThreadDetail)
async def get_thread_detail(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a thread with its live (unsummarized) messages."""
    thread = await _owned_thread(db, thread_id, user)
    messages = await get_messages_for_thread(db, thread.id)

    return ThreadDetail(
        **_thread_out(thread),
        category_ids=await get_thread_category_ids(db, thread.id),
        messages=[
            MessageOut(
                id=m.id,
                role=m.role,
                content=m.content,
                sources=m.sources,
                sequence_number=m.sequence_number,
                created_at=m.created_at.isoformat(),
            )
            for m in messages
        ],
    )


@threads_router.delete("/{thread_id}")
async def remove_thread(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a thread with its messages, summaries and archive."""
    thread = await _owned_thread(db, thread_id, user)
    await delete_thread(db, thread)
    return {"deleted": True, "thread_id": thread_id}


@threads_router.get("/{thread_id}/summary", response_model=SummaryDetail)
async def get_summary(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    thread = await _owned_thread(db, thread_id, user)
    history = await get_thread_summary_history(db, thread.id)
    return SummaryDetail(
        has_summary=bool(history),
        summary=_summary_out(history[0]) if history else None,
        history=[_summary_out(s) for s in history],
    )


@threads_router.post("/{thread_id}/summary", response_model=SummarizeOut)
async def trigger_summary(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
    runtime: RuntimeSettings = Depends(get_runtime_settings),
):
    """Run one summarization pass regardless of the token threshold."""
    thread = await _owned_thread(db, thread_id, user)
    if not runtime.summarization.enabled:
        raise HTTPException(status_code=400, detail="Summarization is disabled")

    result = await summarize_thread(db, runtime.summarization, thread.id)
    return SummarizeOut(
        status=result.status.value,
        reason=result.reason,
        summary=_summary_out(result.summary) if result.summary else None,
    )


@threads_router.get("/{thread_id}/archive", response_model=list[ArchivedMessageOut])
async def get_archive(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    thread = await _owned_thread(db, thread_id, user)
    archived = await get_archived_messages(db, thread.id)
    return [
        ArchivedMessageOut(
            id=m.id,
            role=m.role,
            content=m.content,
            sources=m.sources,
            created_at=m.created_at.isoformat(),
            archived_at=m.archived_at.isoformat(),
            summary_id=m.summary_id,
        )
        for m in archived
    ]
