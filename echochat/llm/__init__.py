"""LLM subsystem -- provider adapters, routing, and stream parsing."""

from echochat.llm.channel import CancellationToken, ChannelClosed, EventChannel
from echochat.llm.errors import (
    AuthError,
    InvalidResponse,
    NetworkError,
    ProviderError,
    RateLimited,
    RequestFailed,
)
from echochat.llm.router import ProviderRouter, default_router
from echochat.llm.tool_call_assembler import ToolCallAssembler
from echochat.llm.types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ProviderId,
    Role,
    StopReason,
    StreamEvent,
    ToolCall,
    ToolResult,
)

__all__ = [
    "AuthError",
    "CancellationToken",
    "ChannelClosed",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "EventChannel",
    "InvalidResponse",
    "NetworkError",
    "ProviderError",
    "ProviderId",
    "ProviderRouter",
    "RateLimited",
    "RequestFailed",
    "Role",
    "StopReason",
    "StreamEvent",
    "ToolCall",
    "ToolCallAssembler",
    "ToolResult",
    "default_router",
]
