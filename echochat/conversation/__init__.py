"""Conversation persistence, replay and export."""

from echochat.conversation.export import export_to_markdown
from echochat.conversation.models import Attachment, Conversation, PersistedMessage
from echochat.conversation.replay import (
    ReplayError,
    load_chat_messages,
    prepare_edit,
    prepare_regeneration,
    to_chat_messages,
    truncate_title,
)
from echochat.conversation.store import ConversationStore, SQLiteConversationStore

__all__ = [
    "Attachment",
    "Conversation",
    "ConversationStore",
    "PersistedMessage",
    "ReplayError",
    "SQLiteConversationStore",
    "export_to_markdown",
    "load_chat_messages",
    "prepare_edit",
    "prepare_regeneration",
    "to_chat_messages",
    "truncate_title",
]
