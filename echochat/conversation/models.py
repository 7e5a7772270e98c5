from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from echochat.llm.types import Role


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Conversation:
    id: str
    title: str
    provider: str = ""
    model: str = ""
    system_prompt: str = ""
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)


@dataclass
class PersistedMessage:
    """
    A stored chat message.

    *seq* is a per-conversation sequence number that orders messages.
    Messages are never deleted; replay flips *is_active* to ``False``.
    """

    id: str
    conversation_id: str
    seq: int
    role: Role
    content: str
    model: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    parent_id: str | None = None
    is_active: bool = True
    created_at: str = field(default_factory=utcnow)


@dataclass
class Attachment:
    """Binary payload stored with a message, e.g. an image sent by the user."""

    id: str
    message_id: str
    mime_type: str
    data: bytes
    filename: str | None = None
    created_at: str = field(default_factory=utcnow)
