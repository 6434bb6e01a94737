"""Shared fixtures: a throwaway SQLite database per test and a scripted LLM."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401  registers every table with Base.metadata
from app.core.database import Base, configure_sqlite
from app.orchestrator.state import add_message, get_or_create_thread
from app.services import llm


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_llm(monkeypatch):
    """
    Replaces the provider boundary. Script replies through
    fake_llm.chat_simple.return_value / side_effect and fake_llm.chat.
    """
    chat_simple = AsyncMock(return_value="")
    chat = AsyncMock(return_value={"choices": [{"message": {"content": "Assistant reply"}}]})
    monkeypatch.setattr(llm, "chat_simple", chat_simple)
    monkeypatch.setattr(llm, "chat", chat)

    return SimpleNamespace(chat_simple=chat_simple, chat=chat)


@pytest.fixture
def make_thread(db):
    """Create a thread for user 1 holding alternating user/assistant messages."""

    async def _make(contents, user_id=1):
        thread = await get_or_create_thread(db, user_id)
        messages = []
        for i, content in enumerate(contents):
            role = "user" if i % 2 == 0 else "assistant"
            messages.append(await add_message(db, thread, role=role, content=content))
        return thread, messages

    return _make
