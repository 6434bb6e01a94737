"""
Thread summarization: compress long threads into a rolling summary.

Trigger: summarization enabled and threads.total_tokens >= tokenThreshold.

One pass:
  1. Take every non-tool message except the newest keepRecentMessages.
  2. Fewer than 2 → nothing to do.
  3. Ask the LLM for a prose summary (capped at summaryMaxTokens).
  4. In ONE transaction: insert the summary, copy the originals into
     archived_messages (unless archiving is off), delete them from
     messages, mark the thread summarized.

A failed or empty LLM answer, or a failed transaction, leaves the thread
exactly as it was. The next qualifying turn tries again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import select, update, delete as sql_delete, func, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.conversation import Thread, Message
from ..models.summary import ThreadSummary, ArchivedMessage
from . import llm
from .settings_store import SummarizationSettings
from .tokens import estimate_tokens, estimate_messages_tokens

logger = logging.getLogger(__name__)

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Create concise but comprehensive "
    "summaries that preserve important context."
)

SUMMARIZATION_PROMPT = """Summarize the following conversation, preserving:
1. Key questions asked and answers provided
2. Important decisions or conclusions reached
3. Any action items or follow-ups mentioned
4. Relevant document references or sources cited

Keep the summary concise but comprehensive enough to continue the conversation naturally.

Conversation:
{messages}

Provide a summary in 2-3 paragraphs. Focus on the most important information that would help continue this conversation."""

SUMMARY_TEMPERATURE = 0.3
DEFAULT_CONTEXT_TOKENS = 8000


# ── Value objects ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ThreadSummaryRecord:
    id: int
    thread_id: str
    summary: str
    messages_summarized: int
    tokens_before: Optional[int]
    tokens_after: Optional[int]
    created_at: datetime

    @classmethod
    def from_row(cls, row: ThreadSummary) -> "ThreadSummaryRecord":
        return cls(
            id=row.id,
            thread_id=row.thread_id,
            summary=row.summary,
            messages_summarized=row.messages_summarized,
            tokens_before=row.tokens_before,
            tokens_after=row.tokens_after,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class ArchivedMessageRecord:
    id: str
    thread_id: str
    role: str
    content: str
    sources: Optional[list]
    created_at: datetime
    archived_at: datetime
    summary_id: Optional[int]

    @classmethod
    def from_row(cls, row: ArchivedMessage) -> "ArchivedMessageRecord":
        return cls(
            id=row.id,
            thread_id=row.thread_id,
            role=row.role,
            content=row.content,
            sources=row.sources,
            created_at=row.created_at,
            archived_at=row.archived_at,
            summary_id=row.summary_id,
        )


class SummarizeStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"  # disabled, or not enough messages
    FAILED = "failed"    # LLM or transaction failure; nothing was written


@dataclass
class SummarizeResult:
    status: SummarizeStatus
    summary: Optional[ThreadSummaryRecord] = None
    reason: str = ""

    @property
    def created(self) -> bool:
        return self.status == SummarizeStatus.CREATED


@dataclass
class ThreadContext:
    summary: Optional[str] = None
    messages: list[dict] = field(default_factory=list)
    total_tokens: int = 0


# ── Reads ────────────────────────────────────────────────────────────

async def get_thread_summary(db: AsyncSession, thread_id: str) -> Optional[ThreadSummaryRecord]:
    """The current summary: newest row for the thread."""
    result = await db.execute(
        select(ThreadSummary)
        .where(ThreadSummary.thread_id == thread_id)
        .order_by(ThreadSummary.created_at.desc(), ThreadSummary.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return ThreadSummaryRecord.from_row(row) if row else None


async def get_thread_summary_history(db: AsyncSession, thread_id: str) -> list[ThreadSummaryRecord]:
    """All summaries, newest first."""
    result = await db.execute(
        select(ThreadSummary)
        .where(ThreadSummary.thread_id == thread_id)
        .order_by(ThreadSummary.created_at.desc(), ThreadSummary.id.desc())
    )
    return [ThreadSummaryRecord.from_row(r) for r in result.scalars().all()]


async def get_archived_messages(db: AsyncSession, thread_id: str) -> list[ArchivedMessageRecord]:
    """Archived originals, oldest first."""
    result = await db.execute(
        select(ArchivedMessage)
        .where(ArchivedMessage.thread_id == thread_id)
        .order_by(ArchivedMessage.created_at.asc(), ArchivedMessage.sequence_number.asc())
    )
    return [ArchivedMessageRecord.from_row(r) for r in result.scalars().all()]


async def get_messages_for_thread(
    db: AsyncSession,
    thread_id: str,
    include_tool: bool = True,
) -> list[Message]:
    """Live messages, oldest first."""
    query = select(Message).where(Message.thread_id == thread_id)
    if not include_tool:
        query = query.where(Message.role != "tool")
    result = await db.execute(
        query.order_by(Message.sequence_number.asc(), Message.created_at.asc())
    )
    return list(result.scalars().all())


# ── Token accounting / trigger ───────────────────────────────────────

async def update_thread_token_count(db: AsyncSession, thread_id: str, tokens: int) -> None:
    await db.execute(
        update(Thread)
        .where(Thread.id == thread_id)
        .values(total_tokens=Thread.total_tokens + tokens)
    )


async def should_summarize(db: AsyncSession, settings: SummarizationSettings, thread_id: str) -> bool:
    if not settings.enabled:
        return False
    total = (await db.execute(
        select(Thread.total_tokens).where(Thread.id == thread_id)
    )).scalar_one_or_none() or 0
    return total >= settings.token_threshold


# ── Summarization pass ───────────────────────────────────────────────

async def get_messages_to_summarize(db: AsyncSession, thread_id: str, keep_recent: int) -> list[Message]:
    """Every non-tool message except the newest keep_recent, oldest first."""
    messages = await get_messages_for_thread(db, thread_id, include_tool=False)
    return messages[: max(0, len(messages) - keep_recent)]


def format_messages_for_summary(messages: list[Message]) -> str:
    return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


async def _archive_and_record(
    db: AsyncSession,
    thread_id: str,
    summary_text: str,
    messages: list[Message],
    tokens_before: int,
    tokens_after: int,
    archive: bool,
) -> ThreadSummary:
    """The four effects, all-or-nothing (SAVEPOINT; the caller's transaction survives a failure)."""
    async with db.begin_nested():
        row = ThreadSummary(
            thread_id=thread_id,
            summary=summary_text,
            messages_summarized=len(messages),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )
        db.add(row)
        await db.flush()

        if archive:
            for m in messages:
                db.add(ArchivedMessage(
                    id=m.id,
                    thread_id=thread_id,
                    role=m.role,
                    content=m.content,
                    sources=m.sources,
                    sequence_number=m.sequence_number,
                    created_at=m.created_at,
                    summary_id=row.id,
                ))
            await db.flush()

        await db.execute(
            sql_delete(Message).where(Message.id.in_([m.id for m in messages]))
        )
        await db.execute(
            update(Thread).where(Thread.id == thread_id).values(is_summarized=True)
        )
    return row


async def summarize_thread(
    db: AsyncSession,
    settings: SummarizationSettings,
    thread_id: str,
) -> SummarizeResult:
    if not settings.enabled:
        return SummarizeResult(SummarizeStatus.SKIPPED, reason="summarization disabled")

    messages = await get_messages_to_summarize(db, thread_id, settings.keep_recent_messages)
    if len(messages) < 2:
        logger.info("Not enough messages to summarize for thread %s (%d)", thread_id, len(messages))
        return SummarizeResult(SummarizeStatus.SKIPPED, reason="fewer than 2 messages to summarize")

    tokens_before = estimate_messages_tokens(messages)
    prompt = SUMMARIZATION_PROMPT.replace("{messages}", format_messages_for_summary(messages))

    try:
        summary_text = await llm.chat_simple(
            prompt=prompt,
            system=SUMMARIZER_SYSTEM_PROMPT,
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=settings.summary_max_tokens,
        )
    except llm.LLMError as e:
        logger.warning("Summarization LLM call failed for thread %s: %s", thread_id, e)
        return SummarizeResult(SummarizeStatus.FAILED, reason=f"llm error: {e}")

    if not summary_text:
        logger.error("Empty summary returned for thread %s", thread_id)
        return SummarizeResult(SummarizeStatus.FAILED, reason="empty summary")

    tokens_after = estimate_tokens(summary_text)

    try:
        row = await _archive_and_record(
            db, thread_id, summary_text, messages,
            tokens_before, tokens_after,
            archive=settings.archive_original_messages,
        )
    except SQLAlchemyError as e:
        logger.error("Summary transaction rolled back for thread %s: %s", thread_id, e)
        return SummarizeResult(SummarizeStatus.FAILED, reason=f"transaction failed: {e}")

    logger.info(
        "Thread %s: summarized %d messages, %d -> %d tokens (archived=%s)",
        thread_id, len(messages), tokens_before, tokens_after,
        settings.archive_original_messages,
    )
    return SummarizeResult(SummarizeStatus.CREATED, summary=ThreadSummaryRecord.from_row(row))


# ── Context for a live turn ──────────────────────────────────────────

async def get_thread_context(
    db: AsyncSession,
    thread_id: str,
    max_tokens: int = DEFAULT_CONTEXT_TOKENS,
) -> ThreadContext:
    """
    Latest summary plus as many recent live messages as fit in max_tokens.
    Walks back from the newest message and stops at the first one that
    would overflow, so recency always wins over completeness.
    """
    current = await get_thread_summary(db, thread_id)
    summary = current.summary if current else None
    total = estimate_tokens(summary) if summary else 0

    messages = await get_messages_for_thread(db, thread_id, include_tool=False)
    window: list[dict] = []
    for m in reversed(messages):
        tokens = estimate_tokens(m.content)
        if total + tokens > max_tokens:
            break
        window.append({"role": m.role, "content": m.content})
        total += tokens
    window.reverse()

    return ThreadContext(summary=summary, messages=window, total_tokens=total)


def format_summary_for_context(summary: str) -> str:
    return (
        "## Previous Conversation Summary\n"
        "The following is a summary of earlier parts of this conversation:\n\n"
        f"{summary}\n\n"
        "---\n"
        "Continue the conversation based on this context."
    )


# ── Admin stats ──────────────────────────────────────────────────────

async def get_summarization_stats(db: AsyncSession) -> dict:
    threads_summarized = (await db.execute(
        select(func.count(distinct(ThreadSummary.thread_id)))
    )).scalar_one()

    total_before, total_after = (await db.execute(
        select(
            func.coalesce(func.sum(ThreadSummary.tokens_before), 0),
            func.coalesce(func.sum(ThreadSummary.tokens_after), 0),
        )
    )).one()

    archived = (await db.execute(select(func.count(ArchivedMessage.id)))).scalar_one()

    avg_compression = round((1 - total_after / total_before) * 100) if total_before > 0 else 0

    return {
        "threads_summarized": threads_summarized,
        "total_tokens_saved": total_before - total_after,
        "avg_compression": avg_compression,
        "archived_messages": archived,
    }
