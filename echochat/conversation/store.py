"""
Conversation store interface and its SQLite implementation.

``SQLiteConversationStore`` uses ``aiosqlite`` with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Messages are ordered by a per-conversation ``seq`` assigned at insert time
and are soft-deleted only: ``is_active`` goes from 1 to 0 and never back.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import aiosqlite

from echochat.conversation.models import Attachment, Conversation, PersistedMessage, utcnow
from echochat.llm.types import Role

# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class ConversationStore(ABC):
    """What replay and the chat front end need from persistence."""

    @abstractmethod
    async def list_active_messages(self, conversation_id: str) -> list[PersistedMessage]:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> PersistedMessage | None:
        ...

    @abstractmethod
    async def insert_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        *,
        model: str | None = None,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
        parent_id: str | None = None,
    ) -> PersistedMessage:
        ...

    @abstractmethod
    async def update_message_content(self, message_id: str, content: str) -> None:
        ...

    @abstractmethod
    async def deactivate_messages_after(self, conversation_id: str, cutoff_seq: int) -> int:
        """Deactivate every active message with ``seq > cutoff_seq``; return the count."""
        ...

    @abstractmethod
    async def list_attachments(self, message_id: str) -> list[Attachment]:
        ...


# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 2

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            provider TEXT NOT NULL DEFAULT '',
            model TEXT NOT NULL DEFAULT '',
            system_prompt TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            model TEXT,
            tokens_in INTEGER,
            tokens_out INTEGER,
            parent_id TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            UNIQUE (conversation_id, seq),
            FOREIGN KEY (conversation_id) REFERENCES conversations(id)
        )""",
        """CREATE INDEX IF NOT EXISTS idx_messages_conv ON messages(conversation_id, seq)""",
    ],
    2: [
        """CREATE TABLE IF NOT EXISTS message_attachments (
            id TEXT PRIMARY KEY,
            message_id TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            filename TEXT,
            data BLOB NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (message_id) REFERENCES messages(id)
        )""",
        """CREATE INDEX IF NOT EXISTS idx_attachments_message ON message_attachments(message_id)""",
    ],
}

_MESSAGE_COLUMNS = (
    "id, conversation_id, seq, role, content, model, tokens_in, tokens_out, "
    "parent_id, is_active, created_at"
)
_CONVERSATION_COLUMNS = "id, title, provider, model, system_prompt, created_at, updated_at"
_ATTACHMENT_COLUMNS = "id, message_id, mime_type, filename, data, created_at"


def _row_to_message(row) -> PersistedMessage:
    return PersistedMessage(
        id=row[0],
        conversation_id=row[1],
        seq=int(row[2]),
        role=Role(row[3]),
        content=row[4],
        model=row[5],
        tokens_in=row[6],
        tokens_out=row[7],
        parent_id=row[8],
        is_active=bool(row[9]),
        created_at=row[10],
    )


def _row_to_attachment(row) -> Attachment:
    return Attachment(
        id=row[0],
        message_id=row[1],
        mime_type=row[2],
        filename=row[3],
        data=bytes(row[4]),
        created_at=row[5],
    )


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row[0],
        title=row[1],
        provider=row[2],
        model=row[3],
        system_prompt=row[4],
        created_at=row[5],
        updated_at=row[6],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SQLiteConversationStore(ConversationStore):
    """
    Async SQLite store for conversations and their messages.

    Usage::

        store = SQLiteConversationStore("~/.echochat/history.db")
        await store.init()
        conv = await store.create_conversation("Hello")
        await store.insert_message(conv.id, Role.USER, "hi")
        messages = await store.list_active_messages(conv.id)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def _run_migrations(self) -> None:
        """Apply any pending migrations sequentially."""
        assert self._db is not None
        current = await self.get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._db.execute("DELETE FROM schema_version")
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

        await self._db.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        title: str = "New Conversation",
        *,
        provider: str = "",
        model: str = "",
        system_prompt: str = "",
    ) -> Conversation:
        assert self._db is not None
        conv = Conversation(
            id=str(uuid.uuid4()),
            title=title,
            provider=provider,
            model=model,
            system_prompt=system_prompt,
        )
        async with self._write_lock:
            await self._db.execute(
                f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    conv.id, conv.title, conv.provider, conv.model,
                    conv.system_prompt, conv.created_at, conv.updated_at,
                ),
            )
            await self._db.commit()
        return conv

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return _row_to_conversation(row) if row is not None else None

    async def list_conversations(self) -> list[Conversation]:
        """Return all conversations, most recently updated first."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations ORDER BY updated_at DESC"
        )
        return [_row_to_conversation(row) for row in await cursor.fetchall()]

    async def update_title(self, conversation_id: str, title: str) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, utcnow(), conversation_id),
            )
            await self._db.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(self, conversation_id: str) -> list[PersistedMessage]:
        """Return every message, active or not, in ``seq`` order."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
            (conversation_id,),
        )
        return [_row_to_message(row) for row in await cursor.fetchall()]

    async def list_active_messages(self, conversation_id: str) -> list[PersistedMessage]:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = ? AND is_active = 1 ORDER BY seq ASC",
            (conversation_id,),
        )
        return [_row_to_message(row) for row in await cursor.fetchall()]

    async def get_message(self, message_id: str) -> PersistedMessage | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        return _row_to_message(row) if row is not None else None

    async def insert_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        *,
        model: str | None = None,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
        parent_id: str | None = None,
    ) -> PersistedMessage:
        assert self._db is not None
        async with self._write_lock:
            cursor = await self._db.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            msg = PersistedMessage(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                seq=int(row[0]) + 1,
                role=role,
                content=content,
                model=model,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                parent_id=parent_id,
            )
            await self._db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    msg.id, msg.conversation_id, msg.seq, msg.role.value, msg.content,
                    msg.model, msg.tokens_in, msg.tokens_out, msg.parent_id,
                    1, msg.created_at,
                ),
            )
            await self._db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (msg.created_at, conversation_id),
            )
            await self._db.commit()
        return msg

    async def update_message_content(self, message_id: str, content: str) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "UPDATE messages SET content = ? WHERE id = ?", (content, message_id)
            )
            await self._db.commit()

    async def deactivate_messages_after(self, conversation_id: str, cutoff_seq: int) -> int:
        assert self._db is not None
        async with self._write_lock:
            cursor = await self._db.execute(
                "UPDATE messages SET is_active = 0 "
                "WHERE conversation_id = ? AND seq > ? AND is_active = 1",
                (conversation_id, cutoff_seq),
            )
            await self._db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def insert_attachment(
        self,
        message_id: str,
        mime_type: str,
        data: bytes,
        *,
        filename: str | None = None,
    ) -> Attachment:
        assert self._db is not None
        att = Attachment(
            id=str(uuid.uuid4()),
            message_id=message_id,
            mime_type=mime_type,
            data=data,
            filename=filename,
        )
        async with self._write_lock:
            await self._db.execute(
                f"INSERT INTO message_attachments ({_ATTACHMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (att.id, att.message_id, att.mime_type, att.filename, att.data, att.created_at),
            )
            await self._db.commit()
        return att

    async def list_attachments(self, message_id: str) -> list[Attachment]:
        """Return a message's attachments in insertion order."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_ATTACHMENT_COLUMNS} FROM message_attachments "
            "WHERE message_id = ? ORDER BY rowid ASC",
            (message_id,),
        )
        return [_row_to_attachment(row) for row in await cursor.fetchall()]
