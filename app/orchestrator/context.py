"""
Context assembly: what goes in front of the model for one turn.

  system prompt
  + resolved skills        (own budget: skills-settings.maxTotalTokens)
  + user memory            (bounded upstream by maxFactsPerCategory)
  + thread summary         (counted inside the history budget)
  + recent live messages   (newest first until the history budget runs out)

Each source is best-effort. A source that fails is left out and named in
AssembledContext.degraded; the turn goes on with the rest.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.memory import get_memory_context
from ..services.settings_store import RuntimeSettings
from ..services.skill_resolver import ResolvedSkills, resolve_skills
from ..services.summarization import (
    ThreadContext,
    format_summary_for_context,
    get_thread_context,
)
from ..services.tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class AssembledContext:
    system_prompt: str
    messages: list[dict] = field(default_factory=list)
    skills: ResolvedSkills = field(default_factory=ResolvedSkills)
    memory_block: str = ""
    summary: str | None = None
    history_tokens: int = 0
    degraded: list[str] = field(default_factory=list)

    def to_llm_messages(self) -> list[dict]:
        return [{"role": "system", "content": self.system_prompt}, *self.messages]

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.system_prompt) + sum(
            estimate_tokens(m["content"]) for m in self.messages
        )


def join_sections(*sections: str) -> str:
    return "\n\n".join(s.strip() for s in sections if s and s.strip())


async def assemble_context(
    db: AsyncSession,
    runtime: RuntimeSettings,
    base_prompt: str,
    thread_id: str,
    user_id: int,
    category_ids: list[int],
    user_message: str,
    max_history_tokens: int,
) -> AssembledContext:
    degraded: list[str] = []

    # Each source reads inside its own SAVEPOINT; on Postgres a failed
    # statement would otherwise abort the whole turn's transaction.
    try:
        async with db.begin_nested():
            skills = await resolve_skills(db, runtime.skills, category_ids, user_message)
    except Exception as e:
        logger.exception("Skill resolution failed, continuing without skills: %s", e)
        skills = ResolvedSkills()
        degraded.append("skills")

    try:
        async with db.begin_nested():
            memory_block = await get_memory_context(db, runtime.memory, user_id, category_ids)
    except Exception as e:
        logger.exception("Memory lookup failed, continuing without memory: %s", e)
        memory_block = ""
        degraded.append("memory")

    try:
        async with db.begin_nested():
            history = await get_thread_context(db, thread_id, max_history_tokens)
    except Exception as e:
        logger.exception("Thread context failed, continuing with the latest message only: %s", e)
        history = ThreadContext(messages=[{"role": "user", "content": user_message}])
        degraded.append("history")

    summary_block = format_summary_for_context(history.summary) if history.summary else ""
    system_prompt = join_sections(base_prompt, skills.combined_prompt, memory_block, summary_block)

    logger.debug(
        "Context for thread %s: skills=%d (%d tok) memory=%s summary=%s history=%d msgs (%d tok)",
        thread_id, len(skills.skills), skills.total_tokens, bool(memory_block),
        bool(history.summary), len(history.messages), history.total_tokens,
    )

    return AssembledContext(
        system_prompt=system_prompt,
        messages=history.messages,
        skills=skills,
        memory_block=memory_block,
        summary=history.summary,
        history_tokens=history.total_tokens,
        degraded=degraded,
    )
