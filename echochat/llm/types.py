"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ProviderId(str, Enum):
    GEMINI = "gemini"
    CLAUDE = "claude"
    LOCAL = "local"

    @property
    def display_name(self) -> str:
        return _PROVIDER_NAMES[self]

    @classmethod
    def parse(cls, value: str) -> ProviderId:
        """Look up a provider id by its wire name (case-insensitive)."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown provider: {value}") from None


_PROVIDER_NAMES = {
    ProviderId.GEMINI: "Google Gemini",
    ProviderId.CLAUDE: "Anthropic Claude",
    ProviderId.LOCAL: "Local (OpenAI-compatible)",
}


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"


class Feature(str, Enum):
    CHAT = "chat"
    VISION = "vision"
    STREAMING = "streaming"
    FUNCTION_CALLING = "function_calling"
    EXTENDED_THINKING = "extended_thinking"
    PDF_INPUT = "pdf_input"


@dataclass
class ImageAttachment:
    """Inline image sent with a user message."""

    mime_type: str
    data: bytes

    def __repr__(self) -> str:
        return f"ImageAttachment(mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict


@dataclass
class ToolResult:
    """Output of one tool execution, tied back to its call by ``call_id``."""

    call_id: str
    content: str
    is_error: bool = False


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: Role
    content: str = ""
    images: list[ImageAttachment] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def is_plain_text(self) -> bool:
        return not (self.images or self.tool_calls or self.tool_results)


@dataclass
class ChatRequest:
    """
    Everything an adapter needs for one model call.

    *temperature*, *system_prompt* and *max_tokens* are optional; adapters
    decide how to fill in missing values for their wire format.
    """

    api_key: str
    model: str
    messages: list[ChatMessage]
    base_url: str | None = None
    temperature: float | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None
    tools: list[ToolDefinition] = field(default_factory=list)

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}..." if self.api_key else "(none)"
        return (
            f"ChatRequest(model={self.model!r}, api_key={masked!r}, "
            f"messages={len(self.messages)}, tools={len(self.tools)})"
        )


@dataclass
class ChatResponse:
    """A complete, non-streamed assistant reply."""

    content: str
    model: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason | None = None


@dataclass
class ModelInfo:
    id: str
    name: str
    features: list[Feature] = field(default_factory=list)


@dataclass
class RawToolDelta:
    """
    An incremental fragment of a streaming tool call.

    Parsers emit these as tool-call pieces arrive.  The ToolCallAssembler
    accumulates them, keyed by *key*, and produces finished ToolCall objects.
    """

    key: int | str
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
    done: bool = False


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass
class Token:
    text: str


@dataclass
class ToolCallStart:
    id: str
    name: str


@dataclass
class ToolCallDelta:
    id: str
    fragment: str


@dataclass
class ToolCallComplete:
    call: ToolCall


@dataclass
class Done:
    tokens_in: int | None = None
    tokens_out: int | None = None
    stop_reason: StopReason | None = None


@dataclass
class StreamError:
    message: str


StreamEvent = Union[Token, ToolCallStart, ToolCallDelta, ToolCallComplete, Done, StreamError]
