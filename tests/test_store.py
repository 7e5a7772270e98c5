"""
Tests for the SQLite conversation store.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from echochat.conversation.store import SCHEMA_VERSION, SQLiteConversationStore
from echochat.llm.types import Role


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_db(tmp_path: Path) -> str:
    return str(tmp_path / "nested" / "history.db")


@pytest.fixture
async def store(tmp_db: str):
    s = SQLiteConversationStore(tmp_db)
    await s.init()
    yield s
    await s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    async def test_init_creates_parent_and_schema(self, store, tmp_db):
        assert Path(tmp_db).exists()
        assert await store.get_schema_version() == SCHEMA_VERSION

    async def test_reopen_keeps_data(self, tmp_db):
        s = SQLiteConversationStore(tmp_db)
        await s.init()
        conv = await s.create_conversation("Persisted")
        await s.close()

        s2 = SQLiteConversationStore(tmp_db)
        await s2.init()
        try:
            assert (await s2.get_conversation(conv.id)).title == "Persisted"
            assert await s2.get_schema_version() == SCHEMA_VERSION
        finally:
            await s2.close()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversations:
    async def test_create_and_get(self, store):
        conv = await store.create_conversation(
            "Hello", provider="claude", model="claude-sonnet", system_prompt="Be brief"
        )
        loaded = await store.get_conversation(conv.id)
        assert loaded == conv

    async def test_default_title(self, store):
        conv = await store.create_conversation()
        assert conv.title == "New Conversation"

    async def test_get_missing(self, store):
        assert await store.get_conversation("nope") is None

    async def test_update_title(self, store):
        conv = await store.create_conversation()
        await store.update_title(conv.id, "Renamed")
        loaded = await store.get_conversation(conv.id)
        assert loaded.title == "Renamed"
        assert loaded.updated_at >= conv.updated_at

    async def test_list_most_recent_first(self, store):
        first = await store.create_conversation("first")
        second = await store.create_conversation("second")
        await store.insert_message(first.id, Role.USER, "bump")
        ids = [c.id for c in await store.list_conversations()]
        assert ids == [first.id, second.id]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    async def test_seq_increments_per_conversation(self, store):
        a = await store.create_conversation("a")
        b = await store.create_conversation("b")
        m1 = await store.insert_message(a.id, Role.USER, "one")
        m2 = await store.insert_message(a.id, Role.ASSISTANT, "two")
        other = await store.insert_message(b.id, Role.USER, "other")
        assert (m1.seq, m2.seq, other.seq) == (1, 2, 1)

    async def test_insert_round_trips_fields(self, store):
        conv = await store.create_conversation()
        user = await store.insert_message(conv.id, Role.USER, "hi")
        reply = await store.insert_message(
            conv.id, Role.ASSISTANT, "hello",
            model="llama3", tokens_in=12, tokens_out=3, parent_id=user.id,
        )
        assert await store.get_message(reply.id) == reply
        assert reply.is_active is True

    async def test_get_missing_message(self, store):
        assert await store.get_message("ghost") is None

    async def test_active_listing_is_seq_ordered(self, store):
        conv = await store.create_conversation()
        for text in ("a", "b", "c"):
            await store.insert_message(conv.id, Role.USER, text)
        assert [m.content for m in await store.list_active_messages(conv.id)] == ["a", "b", "c"]

    async def test_update_content(self, store):
        conv = await store.create_conversation()
        msg = await store.insert_message(conv.id, Role.USER, "draft")
        await store.update_message_content(msg.id, "final")
        assert (await store.get_message(msg.id)).content == "final"

    async def test_deactivate_after(self, store):
        conv = await store.create_conversation()
        msgs = [await store.insert_message(conv.id, Role.USER, str(i)) for i in range(4)]

        count = await store.deactivate_messages_after(conv.id, msgs[1].seq)
        assert count == 2
        assert [m.content for m in await store.list_active_messages(conv.id)] == ["0", "1"]

        # Already inactive rows are not counted again.
        assert await store.deactivate_messages_after(conv.id, msgs[1].seq) == 0

        everything = await store.list_messages(conv.id)
        assert [m.is_active for m in everything] == [True, True, False, False]

    async def test_new_messages_follow_inactive_seq(self, store):
        conv = await store.create_conversation()
        await store.insert_message(conv.id, Role.USER, "q")
        await store.insert_message(conv.id, Role.ASSISTANT, "old answer")
        await store.deactivate_messages_after(conv.id, 1)
        fresh = await store.insert_message(conv.id, Role.ASSISTANT, "new answer")
        assert fresh.seq == 3


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class TestAttachments:
    async def test_insert_and_list(self, store):
        conv = await store.create_conversation()
        msg = await store.insert_message(conv.id, Role.USER, "look")
        first = await store.insert_attachment(msg.id, "image/png", b"\x89PNG\x00", filename="a.png")
        second = await store.insert_attachment(msg.id, "image/jpeg", b"\xff\xd8")

        listed = await store.list_attachments(msg.id)
        assert listed == [first, second]
        assert listed[0].data == b"\x89PNG\x00"
        assert listed[1].filename is None

    async def test_none_for_plain_message(self, store):
        conv = await store.create_conversation()
        msg = await store.insert_message(conv.id, Role.USER, "text only")
        assert await store.list_attachments(msg.id) == []
