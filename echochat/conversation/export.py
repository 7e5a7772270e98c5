from __future__ import annotations

from datetime import datetime

from echochat.conversation.models import Conversation, PersistedMessage
from echochat.llm.types import Role


def _format_date(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return iso


def export_to_markdown(conversation: Conversation, messages: list[PersistedMessage]) -> str:
    lines = [
        f"# {conversation.title}",
        "",
        f"> Model: {conversation.model} | Date: {_format_date(conversation.created_at)}",
        "",
    ]
    if conversation.system_prompt:
        lines += [f"> System Prompt: {conversation.system_prompt}", ""]
    lines += ["---", ""]

    for msg in messages:
        label = "You" if msg.role == Role.USER else (msg.model or "Assistant")
        lines += [f"### {label}", "", msg.content, ""]

    return "\n".join(lines) + "\n"
