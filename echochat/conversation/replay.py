"""
Replay semantics behind "regenerate" and "edit and resend".

Both operations soft-delete the tail of a conversation and return the
active history to send to a fresh agent run.  Neither touches the model.
"""

from __future__ import annotations

import logging

from echochat.conversation.models import PersistedMessage
from echochat.conversation.store import ConversationStore
from echochat.llm.types import ChatMessage, ImageAttachment, Role

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


class ReplayError(Exception):
    """The target message cannot be replayed."""


async def _require_message(
    store: ConversationStore, conversation_id: str, message_id: str
) -> PersistedMessage:
    msg = await store.get_message(message_id)
    if msg is None or msg.conversation_id != conversation_id:
        raise ReplayError(f"Message not found: {message_id}")
    return msg


async def prepare_regeneration(
    store: ConversationStore, conversation_id: str, target_id: str
) -> list[PersistedMessage]:
    """
    Roll the conversation back to the user message that prompted *target_id*.

    Everything after that user message is deactivated and the remaining
    active messages are returned in order.  The target may already be
    inactive, so repeating the call yields the same history.
    """
    target = await _require_message(store, conversation_id, target_id)

    active = await store.list_active_messages(conversation_id)
    prompt = None
    for msg in active:
        if msg.seq >= target.seq:
            break
        if msg.role == Role.USER:
            prompt = msg
    if prompt is None:
        raise ReplayError("No preceding user message found")

    count = await store.deactivate_messages_after(conversation_id, prompt.seq)
    logger.debug("Regenerate %s: deactivated %d message(s)", target_id, count)
    return await store.list_active_messages(conversation_id)


async def prepare_edit(
    store: ConversationStore,
    conversation_id: str,
    target_id: str,
    new_content: str,
) -> list[PersistedMessage]:
    """Overwrite an active message and deactivate everything after it."""
    target = await _require_message(store, conversation_id, target_id)
    if not target.is_active:
        raise ReplayError(f"Message is no longer active: {target_id}")

    await store.update_message_content(target_id, new_content)
    count = await store.deactivate_messages_after(conversation_id, target.seq)
    logger.debug("Edit %s: deactivated %d message(s)", target_id, count)
    return await store.list_active_messages(conversation_id)


def to_chat_messages(messages: list[PersistedMessage]) -> list[ChatMessage]:
    return [ChatMessage(role=m.role, content=m.content) for m in messages]


async def load_chat_messages(
    store: ConversationStore, messages: list[PersistedMessage]
) -> list[ChatMessage]:
    """Like ``to_chat_messages``, with stored images reattached to user messages."""
    chat = to_chat_messages(messages)
    for persisted, msg in zip(messages, chat):
        if persisted.role != Role.USER:
            continue
        msg.images = [
            ImageAttachment(mime_type=a.mime_type, data=a.data)
            for a in await store.list_attachments(persisted.id)
        ]
    return chat


def truncate_title(text: str) -> str:
    """First line of *text*, cut to 47 characters plus ``...`` if over 50."""
    lines = text.splitlines()
    first = lines[0] if lines else text
    if len(first) > TITLE_MAX_CHARS:
        return first[: TITLE_MAX_CHARS - 3] + "..."
    return first
