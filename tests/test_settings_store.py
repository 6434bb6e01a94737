"""Tests for the admin-editable runtime settings."""

import pytest

from app.models.setting import Setting
from app.services.settings_store import (
    MemorySettings,
    SkillsSettings,
    SummarizationSettings,
    get_runtime_setting,
    load_runtime_settings,
    save_runtime_setting,
)


class TestDefaults:

    def test_defaults_are_off(self):
        assert SkillsSettings().enabled is False
        assert SummarizationSettings().enabled is False
        assert MemorySettings().enabled is False

    def test_default_values(self):
        assert SkillsSettings().max_total_tokens == 3000
        s = SummarizationSettings()
        assert (s.token_threshold, s.keep_recent_messages, s.summary_max_tokens) == (100000, 10, 2000)
        assert s.archive_original_messages is True
        m = MemorySettings()
        assert (m.extraction_threshold, m.max_facts_per_category) == (5, 20)
        assert m.auto_extract_on_thread_end is True

    def test_camel_case_wire_format(self):
        dumped = SummarizationSettings(keep_recent_messages=4).model_dump(by_alias=True)
        assert dumped["keepRecentMessages"] == 4
        assert SummarizationSettings.model_validate({"tokenThreshold": 50}).token_threshold == 50


class TestPersistence:

    @pytest.mark.asyncio
    async def test_missing_row_gives_defaults(self, db):
        assert await get_runtime_setting(db, MemorySettings) == MemorySettings()

    @pytest.mark.asyncio
    async def test_save_then_load(self, db):
        await save_runtime_setting(db, SkillsSettings(enabled=True, max_total_tokens=500), updated_by="admin")
        await save_runtime_setting(db, SkillsSettings(enabled=True, max_total_tokens=800), updated_by="admin")

        loaded = await get_runtime_setting(db, SkillsSettings)
        assert loaded.enabled is True
        assert loaded.max_total_tokens == 800

        row = await db.get(Setting, "skills-settings")
        assert row.updated_by == "admin"
        assert '"maxTotalTokens":800' in row.value

    @pytest.mark.asyncio
    async def test_partial_row_fills_defaults(self, db):
        db.add(Setting(key="memory-settings", value='{"enabled": true}'))
        await db.flush()

        loaded = await get_runtime_setting(db, MemorySettings)
        assert loaded.enabled is True
        assert loaded.max_facts_per_category == 20

    @pytest.mark.asyncio
    async def test_malformed_row_falls_back(self, db):
        db.add(Setting(key="summarization-settings", value="{not json"))
        await db.flush()

        assert await get_runtime_setting(db, SummarizationSettings) == SummarizationSettings()
        runtime = await load_runtime_settings(db)
        assert runtime.summarization == SummarizationSettings()

    @pytest.mark.asyncio
    async def test_load_bundle(self, db):
        await save_runtime_setting(db, MemorySettings(enabled=True))
        runtime = await load_runtime_settings(db)
        assert runtime.memory.enabled is True
        assert runtime.skills == SkillsSettings()
