"""Tests for the summarization trigger, the archive transaction and context retrieval."""

import pytest
from sqlalchemy import insert, select, func, update

from app.models.base import utcnow
from app.models.conversation import Thread
from app.models.summary import ArchivedMessage, ThreadSummary
from app.services import llm
from app.services.settings_store import SummarizationSettings
from app.services.summarization import (
    SummarizeStatus,
    format_messages_for_summary,
    format_summary_for_context,
    get_archived_messages,
    get_messages_for_thread,
    get_summarization_stats,
    get_thread_context,
    get_thread_summary,
    get_thread_summary_history,
    should_summarize,
    summarize_thread,
)
from app.services.tokens import estimate_tokens

# 40000 chars, 5000 words -> 8965 tokens each; twelve of them clear 100000
LONG_MESSAGE = "abcdefg " * 5000


def settings(**overrides):
    values = dict(enabled=True, token_threshold=100000, keep_recent_messages=10)
    values.update(overrides)
    return SummarizationSettings(**values)


async def thread_flags(db, thread_id):
    return (await db.execute(
        select(Thread.is_summarized, Thread.total_tokens).where(Thread.id == thread_id)
    )).one()


async def count(db, model, thread_id):
    return (await db.execute(
        select(func.count()).select_from(model).where(model.thread_id == thread_id)
    )).scalar_one()


class TestTrigger:

    @pytest.mark.asyncio
    async def test_running_total_tracks_appended_messages(self, db, make_thread):
        thread, _ = await make_thread(["hello world", "hello world"])
        _, total = await thread_flags(db, thread.id)
        assert total == 2 * estimate_tokens("hello world")

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, db, make_thread):
        thread, _ = await make_thread(["hello world"])
        await db.execute(update(Thread).where(Thread.id == thread.id).values(total_tokens=99999))
        assert await should_summarize(db, settings(), thread.id) is False

        await db.execute(update(Thread).where(Thread.id == thread.id).values(total_tokens=100000))
        assert await should_summarize(db, settings(), thread.id) is True

    @pytest.mark.asyncio
    async def test_disabled_never_triggers(self, db, make_thread):
        thread, _ = await make_thread(["hello"])
        await db.execute(update(Thread).where(Thread.id == thread.id).values(total_tokens=10**9))
        assert await should_summarize(db, settings(enabled=False), thread.id) is False


class TestSummarizeThread:

    @pytest.mark.asyncio
    async def test_twelve_messages_keep_ten(self, db, make_thread, fake_llm):
        thread, messages = await make_thread([LONG_MESSAGE] * 12)
        kept_ids = [m.id for m in messages[2:]]
        fake_llm.chat_simple.return_value = "The user asked about the travel policy."

        assert await should_summarize(db, settings(), thread.id) is True
        result = await summarize_thread(db, settings(), thread.id)

        assert result.status == SummarizeStatus.CREATED
        assert result.summary.messages_summarized == 2
        assert result.summary.tokens_after == estimate_tokens("The user asked about the travel policy.")

        live = await get_messages_for_thread(db, thread.id)
        assert [m.id for m in live] == kept_ids
        assert await count(db, ThreadSummary, thread.id) == 1
        is_summarized, _ = await thread_flags(db, thread.id)
        assert is_summarized is True

    @pytest.mark.asyncio
    async def test_prompt_holds_formatted_messages(self, db, make_thread, fake_llm):
        thread, messages = await make_thread(["q1", "a1", "q2", "a2"])
        fake_llm.chat_simple.return_value = "summary"

        await summarize_thread(db, settings(keep_recent_messages=2), thread.id)

        prompt = fake_llm.chat_simple.call_args.kwargs["prompt"]
        assert "USER: q1\n\nASSISTANT: a1" in prompt
        assert "q2" not in prompt
        assert fake_llm.chat_simple.call_args.kwargs["max_tokens"] == 2000

    @pytest.mark.asyncio
    async def test_archive_plus_live_is_the_original_thread(self, db, make_thread, fake_llm):
        contents = [f"message {i}" for i in range(8)]
        thread, messages = await make_thread(contents)
        original_ids = [m.id for m in messages]
        fake_llm.chat_simple.return_value = "summary"

        result = await summarize_thread(db, settings(keep_recent_messages=3), thread.id)

        archived = await get_archived_messages(db, thread.id)
        live = await get_messages_for_thread(db, thread.id)
        assert [m.id for m in archived] == original_ids[:5]
        assert [m.content for m in archived] + [m.content for m in live] == contents
        assert all(m.summary_id == result.summary.id for m in archived)
        assert set(m.id for m in archived).isdisjoint(m.id for m in live)

    @pytest.mark.asyncio
    async def test_without_archiving_originals_are_gone(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c", "d"])
        fake_llm.chat_simple.return_value = "summary"

        result = await summarize_thread(
            db, settings(keep_recent_messages=1, archive_original_messages=False), thread.id,
        )

        assert result.created
        assert await count(db, ArchivedMessage, thread.id) == 0
        assert len(await get_messages_for_thread(db, thread.id)) == 1

    @pytest.mark.asyncio
    async def test_fewer_than_two_eligible_is_skipped(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c"])

        result = await summarize_thread(db, settings(keep_recent_messages=2), thread.id)

        assert result.status == SummarizeStatus.SKIPPED
        fake_llm.chat_simple.assert_not_called()

    @pytest.mark.asyncio
    async def test_keep_recent_larger_than_thread(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b"])
        result = await summarize_thread(db, settings(keep_recent_messages=50), thread.id)
        assert result.status == SummarizeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_disabled_is_skipped(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c", "d"])
        result = await summarize_thread(db, settings(enabled=False, keep_recent_messages=0), thread.id)
        assert result.status == SummarizeStatus.SKIPPED
        fake_llm.chat_simple.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_failure_leaves_thread_untouched(self, db, make_thread, fake_llm):
        thread, messages = await make_thread(["a", "b", "c", "d"])
        fake_llm.chat_simple.side_effect = llm.LLMError("provider down")

        result = await summarize_thread(db, settings(keep_recent_messages=1), thread.id)

        assert result.status == SummarizeStatus.FAILED
        assert len(await get_messages_for_thread(db, thread.id)) == 4
        assert await get_thread_summary(db, thread.id) is None
        assert await count(db, ArchivedMessage, thread.id) == 0

    @pytest.mark.asyncio
    async def test_empty_summary_is_a_failure(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c", "d"])
        fake_llm.chat_simple.return_value = ""

        result = await summarize_thread(db, settings(keep_recent_messages=1), thread.id)

        assert result.status == SummarizeStatus.FAILED
        assert len(await get_messages_for_thread(db, thread.id)) == 4
        is_summarized, _ = await thread_flags(db, thread.id)
        assert is_summarized is False

    @pytest.mark.asyncio
    async def test_failed_archive_rolls_back_every_effect(self, db, make_thread, fake_llm):
        thread, messages = await make_thread(["a", "b", "c", "d"])
        # An archive row already holding the oldest message's id makes the copy fail
        await db.execute(insert(ArchivedMessage).values(
            id=messages[0].id, thread_id=thread.id, role="user", content="stale",
            sequence_number=0, created_at=utcnow(),
        ))
        fake_llm.chat_simple.return_value = "summary"

        result = await summarize_thread(db, settings(keep_recent_messages=1), thread.id)

        assert result.status == SummarizeStatus.FAILED
        assert await count(db, ThreadSummary, thread.id) == 0
        assert await count(db, ArchivedMessage, thread.id) == 1
        assert len(await get_messages_for_thread(db, thread.id)) == 4
        is_summarized, _ = await thread_flags(db, thread.id)
        assert is_summarized is False

    @pytest.mark.asyncio
    async def test_summary_longer_than_input_is_still_stored(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["hi", "hello"])
        fake_llm.chat_simple.return_value = "A very long and wordy summary. " * 20

        result = await summarize_thread(db, settings(keep_recent_messages=0), thread.id)

        assert result.created
        assert result.summary.tokens_after > result.summary.tokens_before

    @pytest.mark.asyncio
    async def test_later_messages_number_past_the_archive(self, db, make_thread, fake_llm):
        from app.orchestrator.state import add_message

        thread, messages = await make_thread(["a", "b", "c"])
        last_seq = messages[-1].sequence_number
        fake_llm.chat_simple.return_value = "summary"
        await summarize_thread(db, settings(keep_recent_messages=0), thread.id)

        new = await add_message(db, thread, role="user", content="d")
        assert new.sequence_number == last_seq + 1

    @pytest.mark.asyncio
    async def test_history_is_newest_first(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c", "d", "e", "f"])
        fake_llm.chat_simple.side_effect = ["first", "second"]

        await summarize_thread(db, settings(keep_recent_messages=4), thread.id)
        await summarize_thread(db, settings(keep_recent_messages=2), thread.id)

        history = await get_thread_summary_history(db, thread.id)
        assert [s.summary for s in history] == ["second", "first"]
        assert (await get_thread_summary(db, thread.id)).summary == "second"


class TestThreadContext:

    @pytest.mark.asyncio
    async def test_newest_messages_win_under_budget(self, db, make_thread):
        thread, _ = await make_thread(["old " * 50, "middle", "newest"])
        budget = estimate_tokens("middle") + estimate_tokens("newest")

        ctx = await get_thread_context(db, thread.id, max_tokens=budget)

        assert [m["content"] for m in ctx.messages] == ["middle", "newest"]
        assert ctx.total_tokens <= budget
        assert ctx.summary is None

    @pytest.mark.asyncio
    async def test_stops_at_first_message_that_overflows(self, db, make_thread):
        thread, _ = await make_thread(["a", "b " * 100, "c"])
        ctx = await get_thread_context(db, thread.id, max_tokens=estimate_tokens("a") + estimate_tokens("c"))
        # "a" would fit but sits behind the overflowing message
        assert [m["content"] for m in ctx.messages] == ["c"]

    @pytest.mark.asyncio
    async def test_summary_counts_against_budget(self, db, make_thread, fake_llm):
        thread, _ = await make_thread(["a", "b", "c", "d"])
        fake_llm.chat_simple.return_value = "earlier discussion"
        await summarize_thread(db, settings(keep_recent_messages=2), thread.id)

        ctx = await get_thread_context(db, thread.id, max_tokens=8000)

        assert ctx.summary == "earlier discussion"
        assert [m["content"] for m in ctx.messages] == ["c", "d"]
        assert ctx.total_tokens == sum(estimate_tokens(t) for t in ["earlier discussion", "c", "d"])

    def test_format_helpers(self):
        class Msg:
            def __init__(self, role, content):
                self.role, self.content = role, content

        assert format_messages_for_summary([Msg("user", "q"), Msg("assistant", "a")]) == "USER: q\n\nASSISTANT: a"
        block = format_summary_for_context("earlier")
        assert block.startswith("## Previous Conversation Summary")
        assert "earlier" in block


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_after_one_pass(self, db, make_thread, fake_llm):
        thread, _ = await make_thread([LONG_MESSAGE] * 4)
        fake_llm.chat_simple.return_value = "short"
        result = await summarize_thread(db, settings(keep_recent_messages=2), thread.id)

        stats = await get_summarization_stats(db)

        assert stats["threads_summarized"] == 1
        assert stats["archived_messages"] == 2
        assert stats["total_tokens_saved"] == result.summary.tokens_before - result.summary.tokens_after
        assert 0 < stats["avg_compression"] <= 100
