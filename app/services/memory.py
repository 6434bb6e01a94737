"""
Cross-session user memory: extract, store, and format durable user facts.

Storage: one fact list per (user, category); category None is global.
Extraction asks the LLM for new facts after a turn, merges them with the
stored list (exact-string dedupe, capped at maxFactsPerCategory) and
replaces the row. Retrieval merges the global row with the rows of the
thread's categories and renders them as a prompt section.

Extraction never raises into the chat turn: failures come back as a
tagged ExtractionResult carrying the previous facts.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from sqlalchemy import select, delete as sql_delete, func, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.memory import UserMemory
from . import llm
from .settings_store import MemorySettings

logger = logging.getLogger(__name__)

EXTRACTOR_SYSTEM_PROMPT = (
    "You are a memory extraction assistant. Extract key facts from "
    "conversations and return them as a JSON array."
)

MEMORY_EXTRACTION_PROMPT = """You are a memory extraction assistant. Analyze the conversation and extract key facts about the user that would be helpful to remember for future conversations.

Focus on:
- User's role, department, or position
- Projects they're working on
- Preferences for response style or detail level
- Specific topics or areas they frequently ask about
- Important context about their work

Current stored facts (avoid duplicates):
{existing_facts}

Conversation to analyze:
{messages}

Return a JSON array of new facts to remember. Each fact should be a concise statement (1-2 sentences max).
Keep only the most relevant and actionable facts (max {max_facts} total including existing).

IMPORTANT: Return ONLY a valid JSON array of strings, nothing else. Example:
["User is a compliance officer", "Prefers detailed responses with citations"]

If no new facts worth remembering, return an empty array: []"""

EXTRACTION_TEMPERATURE = 0.3
EXTRACTION_MAX_TOKENS = 1000

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class MemoryScope(Enum):
    ALL = "all"


# clear_memory(category_id=ALL_CATEGORIES) wipes every row; None means the global row
ALL_CATEGORIES = MemoryScope.ALL


@dataclass(frozen=True)
class MemoryRecord:
    id: int
    user_id: int
    category_id: Optional[int]
    facts: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: UserMemory) -> "MemoryRecord":
        return cls(
            id=row.id,
            user_id=row.user_id,
            category_id=row.category_id,
            facts=[f for f in (row.facts or []) if isinstance(f, str)],
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class ExtractionStatus(str, Enum):
    UPDATED = "updated"      # fact list changed
    UNCHANGED = "unchanged"  # LLM answered, nothing new survived dedupe
    SKIPPED = "skipped"      # disabled or below extractionThreshold
    FAILED = "failed"        # LLM, parse or write error; facts are the previous ones


@dataclass
class ExtractionResult:
    status: ExtractionStatus
    facts: list[str]
    reason: str = ""


# ── Storage ──────────────────────────────────────────────────────────

def _scope(query, user_id: int, category_id: Optional[int]):
    query = query.where(UserMemory.user_id == user_id)
    if category_id is None:
        return query.where(UserMemory.category_id.is_(None))
    return query.where(UserMemory.category_id == category_id)


async def _get_row(db: AsyncSession, user_id: int, category_id: Optional[int]) -> Optional[UserMemory]:
    result = await db.execute(_scope(select(UserMemory), user_id, category_id))
    return result.scalar_one_or_none()


async def get_memory_for_user(
    db: AsyncSession,
    user_id: int,
    category_id: Optional[int] = None,
) -> Optional[MemoryRecord]:
    row = await _get_row(db, user_id, category_id)
    return MemoryRecord.from_row(row) if row else None


async def get_all_memories_for_user(db: AsyncSession, user_id: int) -> list[MemoryRecord]:
    """Global row first, then categories in id order."""
    result = await db.execute(
        select(UserMemory)
        .where(UserMemory.user_id == user_id)
        .order_by(UserMemory.category_id.is_not(None), UserMemory.category_id.asc())
    )
    return [MemoryRecord.from_row(r) for r in result.scalars().all()]


async def update_memory(
    db: AsyncSession,
    user_id: int,
    category_id: Optional[int],
    facts: list[str],
) -> MemoryRecord:
    """Replace the fact list for (user, category), creating the row if needed."""
    row = await _get_row(db, user_id, category_id)
    if row is None:
        row = UserMemory(user_id=user_id, category_id=category_id, facts=list(facts))
        db.add(row)
    else:
        # New list object so the JSON column is seen as changed
        row.facts = list(facts)
    await db.flush()
    logger.debug("Saved memory: user=%s category=%s facts=%d", user_id, category_id, len(facts))
    return MemoryRecord.from_row(row)


async def clear_memory(
    db: AsyncSession,
    user_id: int,
    category_id: Union[int, None, MemoryScope] = ALL_CATEGORIES,
) -> int:
    """Delete memory rows. Returns how many were removed."""
    if category_id is ALL_CATEGORIES:
        stmt = sql_delete(UserMemory).where(UserMemory.user_id == user_id)
    else:
        stmt = _scope(sql_delete(UserMemory), user_id, category_id)
    result = await db.execute(stmt)
    logger.info("Cleared %d memory row(s) for user %s", result.rowcount, user_id)
    return result.rowcount


async def get_memory_stats(db: AsyncSession) -> dict:
    users = (await db.execute(select(func.count(distinct(UserMemory.user_id))))).scalar_one()
    categories = (await db.execute(
        select(func.count(distinct(UserMemory.category_id)))
        .where(UserMemory.category_id.is_not(None))
    )).scalar_one()

    rows = (await db.execute(select(UserMemory.facts, UserMemory.updated_at))).all()
    today = datetime.now(timezone.utc).date()
    total_facts = 0
    updated_today = 0
    for facts, updated_at in rows:
        if isinstance(facts, list):
            total_facts += len(facts)
        if updated_at is not None:
            # SQLite hands back naive datetimes; they were stored as UTC
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
            if updated_at.astimezone(timezone.utc).date() == today:
                updated_today += 1

    return {
        "users_with_memory": users,
        "total_facts": total_facts,
        "categories_active": categories,
        "extractions_today": updated_today,
    }


# ── Extraction ───────────────────────────────────────────────────────

def parse_fact_array(content: str) -> list[str]:
    """
    First [...] span of the reply, as a list of strings.
    Raises ValueError when there is no array or it isn't valid JSON.
    """
    match = _JSON_ARRAY_RE.search(content or "")
    if not match:
        raise ValueError("no JSON array in reply")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, list):
        raise ValueError("reply is not a JSON array")
    return [item.strip() for item in parsed if isinstance(item, str) and item.strip()]


def merge_facts(existing: list[str], new: list[str], max_facts: int) -> list[str]:
    """Existing first, then new; exact duplicates dropped; cut at max_facts."""
    return list(dict.fromkeys([*existing, *new]))[:max_facts]


def _format_conversation(messages: list[dict]) -> str:
    return "\n\n".join(
        f"{m['role'].upper()}: {m.get('content') or ''}"
        for m in messages
        if m.get("role") in ("user", "assistant")
    )


async def extract_facts(
    settings: MemorySettings,
    messages: list[dict],
    existing_facts: Optional[list[str]] = None,
    max_facts: Optional[int] = None,
) -> ExtractionResult:
    existing = list(existing_facts or [])
    cap = max_facts if max_facts is not None else settings.max_facts_per_category

    if not settings.enabled:
        return ExtractionResult(ExtractionStatus.SKIPPED, existing, "memory disabled")
    if len(messages) < settings.extraction_threshold:
        return ExtractionResult(
            ExtractionStatus.SKIPPED, existing,
            f"{len(messages)} messages < threshold {settings.extraction_threshold}",
        )

    prompt = (
        MEMORY_EXTRACTION_PROMPT
        .replace("{existing_facts}", json.dumps(existing) if existing else "None")
        .replace("{messages}", _format_conversation(messages))
        .replace("{max_facts}", str(cap))
    )

    try:
        reply = await llm.chat_simple(
            prompt=prompt,
            system=EXTRACTOR_SYSTEM_PROMPT,
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=EXTRACTION_MAX_TOKENS,
        )
    except llm.LLMError as e:
        logger.warning("Memory extraction LLM call failed: %s", e)
        return ExtractionResult(ExtractionStatus.FAILED, existing, f"llm error: {e}")

    try:
        new_facts = parse_fact_array(reply or "[]")
    except ValueError as e:
        logger.warning("Failed to parse extracted facts: %s", e)
        return ExtractionResult(ExtractionStatus.FAILED, existing, f"parse error: {e}")

    merged = merge_facts(existing, new_facts, cap)
    status = ExtractionStatus.UNCHANGED if merged == existing else ExtractionStatus.UPDATED
    return ExtractionResult(status, merged)


async def process_conversation_for_memory(
    db: AsyncSession,
    settings: MemorySettings,
    user_id: int,
    category_id: Optional[int],
    messages: list[dict],
) -> ExtractionResult:
    """Extract against the stored facts and write back only if the list changed."""
    if not settings.enabled:
        return ExtractionResult(ExtractionStatus.SKIPPED, [], "memory disabled")

    current = await get_memory_for_user(db, user_id, category_id)
    existing = current.facts if current else []

    result = await extract_facts(settings, messages, existing, settings.max_facts_per_category)
    if result.status != ExtractionStatus.UPDATED:
        return result

    try:
        # SAVEPOINT; a failed write leaves the turn's transaction usable
        async with db.begin_nested():
            await update_memory(db, user_id, category_id, result.facts)
    except SQLAlchemyError as e:
        logger.error("Memory write failed for user %s, category %s: %s", user_id, category_id, e)
        return ExtractionResult(ExtractionStatus.FAILED, existing, f"write error: {e}")

    logger.info(
        "Updated memory for user %s, category %s: %d facts",
        user_id, category_id, len(result.facts),
    )
    return result


# ── Retrieval ────────────────────────────────────────────────────────

def format_memory_for_prompt(facts: list[str]) -> str:
    """Format facts as a system prompt section."""
    if not facts:
        return ""

    lines = "\n".join(f"- {fact}" for fact in facts)
    return (
        "## User Context (Memory)\n"
        "The following facts are known about this user from previous conversations:\n"
        f"{lines}\n\n"
        "Use this context to provide more personalized and relevant responses."
    )


async def get_memory_context(
    db: AsyncSession,
    settings: MemorySettings,
    user_id: int,
    category_ids: Optional[list[int]] = None,
) -> str:
    """Global facts, then each category's, deduplicated, as a prompt block."""
    if not settings.enabled:
        return ""

    facts: list[str] = []
    global_memory = await get_memory_for_user(db, user_id, None)
    if global_memory:
        facts.extend(global_memory.facts)

    for category_id in category_ids or []:
        memory = await get_memory_for_user(db, user_id, category_id)
        if memory:
            facts.extend(memory.facts)

    return format_memory_for_prompt(list(dict.fromkeys(facts)))
