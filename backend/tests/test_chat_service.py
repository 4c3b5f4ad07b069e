"""
Tests for chat persistence: the chat service, the ChatStore wrapper and the
chat models.

Uses an in-memory SQLite database for isolation.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models.chat import Base, ChatMessage, ChatSession
from services.chat_service import (
    clear_chat_history,
    get_messages,
    get_or_create_session,
    mark_actions_applied,
    save_message,
)
from services.chat_store import ChatStore


# ---------------------------------------------------------------------------
# Test database setup (in-memory SQLite)
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session():
    """Create tables and yield a fresh session for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as sess:
        yield sess

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def store():
    """A ChatStore on the test database."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield ChatStore(session_factory=TestSessionLocal)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


SAMPLE_INVOCATIONS = [
    {"id": "call_1", "name": "deleteFields", "args": {"fieldIds": ["a"]}},
]


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class TestChatModels:
    def test_message_to_dict(self):
        message = ChatMessage(
            id="m1",
            session_id="s1",
            sequence=1,
            role="assistant",
            content="Done",
            tool_invocations=SAMPLE_INVOCATIONS,
            actions_applied=True,
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        d = message.to_dict()
        assert d["id"] == "m1"
        assert d["toolInvocations"] == SAMPLE_INVOCATIONS
        assert d["actionsApplied"] is True
        assert d["createdAt"].startswith("2026-01-01")

    def test_message_to_dict_defaults(self):
        message = ChatMessage(id="m1", session_id="s1", sequence=1, role="user", content="Hi")
        d = message.to_dict()
        assert d["toolInvocations"] == []
        assert d["actionsApplied"] is False
        assert d["createdAt"] is None

    def test_session_to_dict(self):
        chat_session = ChatSession(id="s1", form_id="form-1")
        assert chat_session.to_dict()["formId"] == "form-1"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class TestChatService:
    @pytest.mark.asyncio
    async def test_get_or_create_session_reuses(self, session):
        first = await get_or_create_session(session, "form-1")
        second = await get_or_create_session(session, "form-1")
        other = await get_or_create_session(session, "form-2")
        assert first.id == second.id
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_session_records_owner(self, session):
        chat = await get_or_create_session(session, "form-1", user_id="user-7")
        assert chat.to_dict()["userId"] == "user-7"
        assert (await get_or_create_session(session, "form-1")).user_id == "user-7"

    @pytest.mark.asyncio
    async def test_messages_in_send_order(self, session):
        chat = await get_or_create_session(session, "form-1")
        await save_message(session, chat.id, "user", "First")
        await save_message(session, chat.id, "assistant", "Second", SAMPLE_INVOCATIONS)
        await save_message(session, chat.id, "user", "Third")

        messages = await get_messages(session, chat.id)
        assert [m.content for m in messages] == ["First", "Second", "Third"]
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert messages[1].tool_invocations == SAMPLE_INVOCATIONS
        assert messages[0].tool_invocations is None

    @pytest.mark.asyncio
    async def test_sequences_are_per_session(self, session):
        one = await get_or_create_session(session, "form-1")
        two = await get_or_create_session(session, "form-2")
        await save_message(session, one.id, "user", "a")
        message = await save_message(session, two.id, "user", "b")
        assert message.sequence == 1

    @pytest.mark.asyncio
    async def test_mark_actions_applied(self, session):
        chat = await get_or_create_session(session, "form-1")
        message = await save_message(session, chat.id, "assistant", "Done", SAMPLE_INVOCATIONS)
        assert message.actions_applied is False

        updated = await mark_actions_applied(session, message.id)
        assert updated.actions_applied is True
        assert await mark_actions_applied(session, "missing") is None

    @pytest.mark.asyncio
    async def test_clear_chat_history_deletes_session(self, session):
        chat = await get_or_create_session(session, "form-1")
        await save_message(session, chat.id, "user", "a")
        await save_message(session, chat.id, "assistant", "b")

        deleted = await clear_chat_history(session, "form-1")
        assert deleted == 2
        assert await get_messages(session, chat.id) == []

        reopened = await get_or_create_session(session, "form-1")
        assert reopened.id != chat.id

    @pytest.mark.asyncio
    async def test_clear_unknown_form(self, session):
        assert await clear_chat_history(session, "nope") == 0


# ---------------------------------------------------------------------------
# ChatStore
# ---------------------------------------------------------------------------

class TestChatStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        session_id = await store.get_or_create_session("form-1")
        saved = await store.save_message(session_id, "assistant", "Done", SAMPLE_INVOCATIONS)
        assert saved["role"] == "assistant"
        assert saved["actionsApplied"] is False

        assert await store.mark_applied(saved["id"]) is True
        messages = await store.get_messages(session_id)
        assert len(messages) == 1
        assert messages[0]["actionsApplied"] is True
        assert messages[0]["toolInvocations"] == SAMPLE_INVOCATIONS

    @pytest.mark.asyncio
    async def test_mark_applied_unknown(self, store):
        assert await store.mark_applied("missing") is False

    @pytest.mark.asyncio
    async def test_clear_history(self, store):
        session_id = await store.get_or_create_session("form-1")
        await store.save_message(session_id, "user", "Hi")
        assert await store.clear_history("form-1") == 1
        assert await store.get_messages(session_id) == []
