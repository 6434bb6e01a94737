"""
Skill resolver: decides which skills go in front of the model this turn.

Collection order: always → category index skills → keyword matches.
A skill found by more than one path is kept once, credited to the first.
The activated set is then stably sorted by priority (lower first) and
greedily packed into skills-settings.maxTotalTokens. Skills that don't fit
are skipped whole and recorded in the trace.

Pure selection and string composition. No LLM call.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.skill import Skill, TriggerType
from .settings_store import SkillsSettings
from .skills import (
    get_active_skills_by_trigger,
    get_category_ids_for_skills,
    get_index_skills_for_categories,
)
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)


class TraceOutcome(str, Enum):
    INCLUDED = "included"
    SKIPPED_BUDGET = "skipped_budget"
    SKIPPED_CATEGORY = "skipped_category"


@dataclass
class SkillTraceEntry:
    name: str
    trigger: str
    outcome: TraceOutcome
    tokens: int
    reason: str = ""


@dataclass
class ResolvedSkills:
    skills: list[Skill] = field(default_factory=list)
    combined_prompt: str = ""
    total_tokens: int = 0
    activated_by: dict[str, list[str]] = field(
        default_factory=lambda: {t.value: [] for t in TriggerType}
    )
    trace: list[SkillTraceEntry] = field(default_factory=list)

    def trigger_for(self, skill_name: str) -> Optional[str]:
        for trigger, names in self.activated_by.items():
            if skill_name in names:
                return trigger
        return None


def parse_keywords(trigger_value: Optional[str]) -> list[str]:
    """'Budget, travel policy ,' → ['budget', 'travel policy']"""
    if not trigger_value:
        return []
    return [k.strip().lower() for k in trigger_value.split(",") if k.strip()]


def matches_keyword(trigger_value: Optional[str], message: str) -> bool:
    """True when any keyword appears in the message as a whole word (case-insensitive)."""
    for keyword in parse_keywords(trigger_value):
        if re.search(rf"\b{re.escape(keyword)}\b", message, flags=re.IGNORECASE):
            return True
    return False


def skill_tokens(skill: Skill) -> int:
    """Cached estimate, or a fresh one when the cache is empty."""
    if skill.token_estimate:
        return skill.token_estimate
    return estimate_tokens(skill.prompt_content)


async def resolve_skills(
    db: AsyncSession,
    settings: SkillsSettings,
    category_ids: list[int],
    user_message: str,
) -> ResolvedSkills:
    if not settings.enabled:
        return ResolvedSkills()

    debug = logger.info if settings.debug_mode else logger.debug
    resolved = ResolvedSkills()
    activated: list[tuple[Skill, str]] = []
    seen: set[int] = set()

    def collect(skill: Skill, trigger: TriggerType) -> None:
        seen.add(skill.id)
        activated.append((skill, trigger.value))
        resolved.activated_by[trigger.value].append(skill.name)

    # 1. Always-on
    for skill in await get_active_skills_by_trigger(db, TriggerType.ALWAYS):
        if skill.id not in seen:
            collect(skill, TriggerType.ALWAYS)

    # 2. Index skills of the selected categories
    if category_ids:
        for skill in await get_index_skills_for_categories(db, category_ids):
            if skill.id not in seen:
                collect(skill, TriggerType.CATEGORY)

    # 3. Keyword matches, gated by category restriction
    candidates = [
        s for s in await get_active_skills_by_trigger(db, TriggerType.KEYWORD)
        if s.id not in seen and matches_keyword(s.trigger_value, user_message)
    ]
    restricted = [s.id for s in candidates if s.category_restricted]
    links = await get_category_ids_for_skills(db, restricted) if (restricted and category_ids) else {}
    selected = set(category_ids)

    for skill in candidates:
        if skill.category_restricted and category_ids and not (links.get(skill.id, set()) & selected):
            debug("Skills: skipping '%s': keyword matched but category restriction not met", skill.name)
            resolved.trace.append(SkillTraceEntry(
                name=skill.name,
                trigger=TriggerType.KEYWORD.value,
                outcome=TraceOutcome.SKIPPED_CATEGORY,
                tokens=skill_tokens(skill),
                reason=f"linked categories {sorted(links.get(skill.id, set()))} not in {sorted(selected)}",
            ))
            continue
        collect(skill, TriggerType.KEYWORD)

    # 4. Priority order; sorted() is stable so ties keep collection order
    activated.sort(key=lambda pair: pair[0].priority)

    # 5. Greedy pack
    parts = []
    for skill, trigger in activated:
        tokens = skill_tokens(skill)
        if resolved.total_tokens + tokens > settings.max_total_tokens:
            debug(
                "Skills: skipping '%s': would exceed token limit (%d > %d)",
                skill.name, resolved.total_tokens + tokens, settings.max_total_tokens,
            )
            resolved.trace.append(SkillTraceEntry(
                name=skill.name,
                trigger=trigger,
                outcome=TraceOutcome.SKIPPED_BUDGET,
                tokens=tokens,
                reason=f"{resolved.total_tokens + tokens} > {settings.max_total_tokens}",
            ))
            continue

        resolved.skills.append(skill)
        parts.append(skill.prompt_content)
        resolved.total_tokens += tokens
        resolved.trace.append(SkillTraceEntry(
            name=skill.name, trigger=trigger, outcome=TraceOutcome.INCLUDED, tokens=tokens,
        ))

    resolved.combined_prompt = "\n\n".join(parts)

    debug(
        "Skills resolved: %d included, %d tokens | always=%s category=%s keyword=%s",
        len(resolved.skills), resolved.total_tokens,
        resolved.activated_by["always"], resolved.activated_by["category"],
        resolved.activated_by["keyword"],
    )
    return resolved


async def preview_skill_resolution(
    db: AsyncSession,
    settings: SkillsSettings,
    category_ids: list[int],
    test_message: str,
) -> dict:
    """What would fire for this input. Used by the admin preview endpoint."""
    resolved = await resolve_skills(db, settings, category_ids, test_message)
    return {
        "would_activate": [
            {
                "name": skill.name,
                "trigger": resolved.trigger_for(skill.name) or "unknown",
                "tokens": skill_tokens(skill),
            }
            for skill in resolved.skills
        ],
        "total_tokens": resolved.total_tokens,
        "exceeds_limit": resolved.total_tokens > settings.max_total_tokens,
        "trace": [
            {
                "name": entry.name,
                "trigger": entry.trigger,
                "outcome": entry.outcome.value,
                "tokens": entry.tokens,
                "reason": entry.reason,
            }
            for entry in resolved.trace
        ],
    }
