from __future__ import annotations

from echochat.config import ProviderConfig
from echochat.llm.types import ChatMessage, ChatRequest, ToolDefinition


def build_request(
    provider: ProviderConfig,
    api_key: str,
    messages: list[ChatMessage],
    *,
    system_prompt: str = "",
    tools: list[ToolDefinition] | None = None,
) -> ChatRequest:
    """Assemble a ``ChatRequest`` from provider settings and history."""
    return ChatRequest(
        api_key=api_key,
        model=provider.model,
        messages=list(messages),
        base_url=provider.api_base or None,
        temperature=provider.temperature,
        system_prompt=system_prompt or None,
        max_tokens=provider.max_tokens or None,
        tools=list(tools or []),
    )
