"""
Chat turn handling.

Receive message → store → assemble context → complete → store → post-turn work.

Post-turn work (summarization, memory extraction) runs inline after the
reply is stored. Neither can fail the turn.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..services import llm
from ..services.memory import ExtractionResult, ExtractionStatus, process_conversation_for_memory
from ..services.settings_store import RuntimeSettings, load_runtime_settings
from ..services.summarization import (
    SummarizeResult,
    SummarizeStatus,
    get_messages_for_thread,
    should_summarize,
    summarize_thread,
)
from .context import assemble_context
from .state import (
    add_message,
    get_or_create_thread,
    get_thread_category_ids,
    set_thread_categories,
)

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Something went wrong on my end. Please try again."
MEMORY_WINDOW = 10


@dataclass
class TurnResult:
    content: str
    thread_id: str
    message_id: str
    skills: list[dict] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    summarization: Optional[str] = None
    memory: Optional[str] = None
    elapsed_ms: int = 0


async def run_post_turn(
    db: AsyncSession,
    runtime: RuntimeSettings,
    thread_id: str,
    user_id: int,
    category_ids: list[int],
) -> tuple[Optional[SummarizeResult], Optional[ExtractionResult]]:
    """
    Summarize if the thread crossed the threshold; refresh memory if enabled.

    Each step runs in its own SAVEPOINT, so a database error in one of them
    is rolled back alone and the turn's messages still commit.
    """
    summary_result = None
    memory_result = None

    # Memory reads the tail before summarization can archive it
    recent: list[dict] = []
    if runtime.memory.enabled and runtime.memory.auto_extract_on_thread_end:
        try:
            async with db.begin_nested():
                live = await get_messages_for_thread(db, thread_id, include_tool=False)
            recent = [{"role": m.role, "content": m.content} for m in live[-MEMORY_WINDOW:]]
        except Exception as e:
            logger.exception("Could not load messages for memory extraction in thread %s: %s", thread_id, e)

    try:
        async with db.begin_nested():
            if await should_summarize(db, runtime.summarization, thread_id):
                summary_result = await summarize_thread(db, runtime.summarization, thread_id)
    except Exception as e:
        logger.exception("Summarization crashed for thread %s: %s", thread_id, e)
        summary_result = SummarizeResult(SummarizeStatus.FAILED, reason=f"crashed: {e}")

    if recent:
        try:
            async with db.begin_nested():
                memory_result = await process_conversation_for_memory(
                    db, runtime.memory, user_id,
                    category_ids[0] if category_ids else None,
                    recent,
                )
        except Exception as e:
            logger.exception("Memory extraction crashed for user %s: %s", user_id, e)
            memory_result = ExtractionResult(ExtractionStatus.FAILED, [], f"crashed: {e}")

    return summary_result, memory_result


async def handle_message(
    db: AsyncSession,
    user_id: int,
    message: str,
    thread_id: Optional[str] = None,
    category_ids: Optional[list[int]] = None,
) -> TurnResult:
    """Main entry point for one chat turn."""
    start = time.monotonic()
    settings = get_settings()
    runtime = await load_runtime_settings(db)

    # 1. Thread + category selection
    thread = await get_or_create_thread(db, user_id, thread_id)
    if category_ids is not None:
        await set_thread_categories(db, thread, category_ids)
    selected = await get_thread_category_ids(db, thread.id)

    # 2. Store the user message (bumps the running token count)
    await add_message(db, thread, role="user", content=message)

    # 3. Assemble context
    context = await assemble_context(
        db, runtime,
        base_prompt=settings.system_prompt,
        thread_id=thread.id,
        user_id=user_id,
        category_ids=selected,
        user_message=message,
        max_history_tokens=settings.history_max_tokens,
    )

    # 4. Complete
    try:
        response = await llm.chat(messages=context.to_llm_messages())
        content = llm.completion_text(response) or FALLBACK_REPLY
    except llm.LLMError as e:
        logger.error("Chat completion failed for thread %s: %s", thread.id, e)
        content = FALLBACK_REPLY

    # 5. Store the reply
    reply = await add_message(db, thread, role="assistant", content=content)

    # 6. Post-turn work
    summary_result, memory_result = await run_post_turn(
        db, runtime, thread.id, user_id, selected,
    )

    elapsed = int((time.monotonic() - start) * 1000)
    logger.info(
        "Turn done: thread=%s skills=%d degraded=%s elapsed=%dms",
        thread.id, len(context.skills.skills), context.degraded, elapsed,
    )

    return TurnResult(
        content=content,
        thread_id=thread.id,
        message_id=reply.id,
        skills=[
            {"name": s.name, "trigger": context.skills.trigger_for(s.name)}
            for s in context.skills.skills
        ],
        degraded=context.degraded,
        summarization=summary_result.status.value if summary_result else None,
        memory=memory_result.status.value if memory_result else None,
        elapsed_ms=elapsed,
    )
