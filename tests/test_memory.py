"""Tests for user memory storage, extraction and prompt retrieval."""

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.memory import UserMemory
from app.services import llm
from app.services import memory as memory_module
from app.services.memory import (
    ALL_CATEGORIES,
    ExtractionStatus,
    clear_memory,
    extract_facts,
    format_memory_for_prompt,
    get_all_memories_for_user,
    get_memory_context,
    get_memory_for_user,
    get_memory_stats,
    merge_facts,
    parse_fact_array,
    process_conversation_for_memory,
    update_memory,
)
from app.services.settings_store import MemorySettings

CONVERSATION = [
    {"role": "user", "content": "I work in Finance."},
    {"role": "assistant", "content": "Noted."},
    {"role": "user", "content": "Keep answers short please."},
    {"role": "assistant", "content": "Will do."},
    {"role": "user", "content": "What is the travel budget?"},
]


def settings(**overrides):
    values = dict(enabled=True, extraction_threshold=5, max_facts_per_category=20)
    values.update(overrides)
    return MemorySettings(**values)


class TestParsing:

    def test_first_array_in_reply(self):
        reply = 'Sure! Here you go:\n["User is in Finance", "Prefers short answers"]\nThanks.'
        assert parse_fact_array(reply) == ["User is in Finance", "Prefers short answers"]

    def test_non_strings_and_blanks_dropped(self):
        assert parse_fact_array('["a", 3, "", "  b  "]') == ["a", "b"]

    def test_no_array_raises(self):
        with pytest.raises(ValueError):
            parse_fact_array("I could not find any facts.")

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_fact_array("[not, json]")

    def test_merge_dedupes_exact_strings_and_caps(self):
        merged = merge_facts(["a", "b"], ["b", "c", "d"], max_facts=3)
        assert merged == ["a", "b", "c"]

    def test_merge_is_case_sensitive(self):
        assert merge_facts(["User is in Finance"], ["user is in finance"], 20) == [
            "User is in Finance",
            "user is in finance",
        ]


class TestExtractFacts:

    @pytest.mark.asyncio
    async def test_known_fact_is_not_doubled(self, fake_llm):
        fake_llm.chat_simple.return_value = '["User is in Finance", "Prefers short answers"]'

        result = await extract_facts(settings(), CONVERSATION, ["User is in Finance"], max_facts=20)

        assert result.status == ExtractionStatus.UPDATED
        assert result.facts == ["User is in Finance", "Prefers short answers"]

    @pytest.mark.asyncio
    async def test_below_threshold_skips_llm(self, fake_llm):
        result = await extract_facts(settings(), CONVERSATION[:4], ["kept"])

        assert result.status == ExtractionStatus.SKIPPED
        assert result.facts == ["kept"]
        fake_llm.chat_simple.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_skips(self, fake_llm):
        result = await extract_facts(settings(enabled=False), CONVERSATION)
        assert result.status == ExtractionStatus.SKIPPED
        fake_llm.chat_simple.assert_not_called()

    @pytest.mark.asyncio
    async def test_parse_failure_keeps_existing(self, fake_llm):
        fake_llm.chat_simple.return_value = "The user seems to work in finance."

        result = await extract_facts(settings(), CONVERSATION, ["User is in Finance"])

        assert result.status == ExtractionStatus.FAILED
        assert result.facts == ["User is in Finance"]

    @pytest.mark.asyncio
    async def test_llm_failure_keeps_existing(self, fake_llm):
        fake_llm.chat_simple.side_effect = llm.LLMError("timeout")

        result = await extract_facts(settings(), CONVERSATION, ["User is in Finance"])

        assert result.status == ExtractionStatus.FAILED
        assert result.facts == ["User is in Finance"]

    @pytest.mark.asyncio
    async def test_nothing_new_is_unchanged(self, fake_llm):
        fake_llm.chat_simple.return_value = "[]"
        result = await extract_facts(settings(), CONVERSATION, ["User is in Finance"])
        assert result.status == ExtractionStatus.UNCHANGED

    @pytest.mark.asyncio
    async def test_prompt_lists_only_user_and_assistant_turns(self, fake_llm):
        fake_llm.chat_simple.return_value = "[]"
        messages = CONVERSATION + [{"role": "tool", "content": "search results blob"}]

        await extract_facts(settings(), messages, [], max_facts=7)

        prompt = fake_llm.chat_simple.call_args.kwargs["prompt"]
        assert "USER: I work in Finance." in prompt
        assert "search results blob" not in prompt
        assert "max 7 total" in prompt


class TestStorage:

    @pytest.mark.asyncio
    async def test_update_replaces_whole_list(self, db):
        await update_memory(db, 1, None, ["a", "b"])
        await update_memory(db, 1, None, ["c"])

        memory = await get_memory_for_user(db, 1, None)
        assert memory.facts == ["c"]

    @pytest.mark.asyncio
    async def test_global_and_category_rows_are_separate(self, db):
        await update_memory(db, 1, None, ["global fact"])
        await update_memory(db, 1, 4, ["hr fact"])
        await update_memory(db, 2, None, ["other user"])

        rows = await get_all_memories_for_user(db, 1)
        assert [(r.category_id, r.facts) for r in rows] == [(None, ["global fact"]), (4, ["hr fact"])]

    @pytest.mark.asyncio
    async def test_clear_scopes(self, db):
        await update_memory(db, 1, None, ["g"])
        await update_memory(db, 1, 4, ["c4"])
        await update_memory(db, 1, 5, ["c5"])

        assert await clear_memory(db, 1, 4) == 1
        assert await get_memory_for_user(db, 1, 4) is None

        assert await clear_memory(db, 1, None) == 1
        assert await get_memory_for_user(db, 1, None) is None
        assert await get_memory_for_user(db, 1, 5) is not None

        assert await clear_memory(db, 1, ALL_CATEGORIES) == 1
        assert await get_all_memories_for_user(db, 1) == []

    @pytest.mark.asyncio
    async def test_process_writes_only_on_change(self, db, fake_llm):
        fake_llm.chat_simple.return_value = '["User is in Finance"]'

        first = await process_conversation_for_memory(db, settings(), 1, 3, CONVERSATION)
        second = await process_conversation_for_memory(db, settings(), 1, 3, CONVERSATION)

        assert first.status == ExtractionStatus.UPDATED
        assert second.status == ExtractionStatus.UNCHANGED
        assert (await get_memory_for_user(db, 1, 3)).facts == ["User is in Finance"]
        assert await get_memory_for_user(db, 1, None) is None

    @pytest.mark.asyncio
    async def test_process_failure_writes_nothing(self, db, fake_llm):
        await update_memory(db, 1, None, ["User is in Finance"])
        fake_llm.chat_simple.return_value = "no json here"

        result = await process_conversation_for_memory(db, settings(), 1, None, CONVERSATION)

        assert result.status == ExtractionStatus.FAILED
        assert (await get_memory_for_user(db, 1, None)).facts == ["User is in Finance"]

    @pytest.mark.asyncio
    async def test_second_global_row_is_rejected(self, db):
        await update_memory(db, 1, None, ["first"])

        with pytest.raises(IntegrityError):
            async with db.begin_nested():
                db.add(UserMemory(user_id=1, category_id=None, facts=["second"]))
                await db.flush()

        assert (await get_memory_for_user(db, 1, None)).facts == ["first"]
        assert await get_memory_context(db, settings(), 1, []) != ""

    @pytest.mark.asyncio
    async def test_write_error_keeps_existing_and_session_usable(self, db, fake_llm, monkeypatch):
        await update_memory(db, 1, 3, ["User is in Finance"])
        fake_llm.chat_simple.return_value = '["Prefers short answers"]'

        async def broken_write(db, user_id, category_id, facts):
            # Second row for the same scope, with a NULL fact list
            db.add(UserMemory(user_id=user_id, category_id=category_id, facts=None))
            await db.flush()

        monkeypatch.setattr(memory_module, "update_memory", broken_write)
        result = await process_conversation_for_memory(db, settings(), 1, 3, CONVERSATION)

        assert result.status == ExtractionStatus.FAILED
        assert result.facts == ["User is in Finance"]
        assert "write error" in result.reason
        assert (await get_memory_for_user(db, 1, 3)).facts == ["User is in Finance"]

    @pytest.mark.asyncio
    async def test_stats(self, db):
        await update_memory(db, 1, None, ["a", "b"])
        await update_memory(db, 1, 4, ["c"])
        await update_memory(db, 2, 4, ["d"])

        stats = await get_memory_stats(db)

        assert stats["users_with_memory"] == 2
        assert stats["total_facts"] == 4
        assert stats["categories_active"] == 1
        assert stats["extractions_today"] == 3


class TestRetrieval:

    def test_format_empty_is_blank(self):
        assert format_memory_for_prompt([]) == ""

    def test_format_bullets_under_heading(self):
        block = format_memory_for_prompt(["a", "b"])
        assert block.startswith("## User Context (Memory)")
        assert "- a\n- b" in block

    @pytest.mark.asyncio
    async def test_disabled_is_empty(self, db):
        await update_memory(db, 1, None, ["a"])
        assert await get_memory_context(db, settings(enabled=False), 1, []) == ""

    @pytest.mark.asyncio
    async def test_merges_global_and_categories_without_duplicates(self, db):
        await update_memory(db, 1, None, ["In Finance", "Likes tables"])
        await update_memory(db, 1, 3, ["Likes tables", "Travels monthly"])
        await update_memory(db, 1, 9, ["Not selected"])

        block = await get_memory_context(db, settings(), 1, [3])

        assert block == format_memory_for_prompt(["In Finance", "Likes tables", "Travels monthly"])

    @pytest.mark.asyncio
    async def test_retrieval_is_idempotent(self, db):
        await update_memory(db, 1, None, ["In Finance"])
        first = await get_memory_context(db, settings(), 1, [3])
        second = await get_memory_context(db, settings(), 1, [3])
        assert first == second
