"""Events emitted by the agent loop and decisions fed back into it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from echochat.llm.types import ToolCall, ToolResult


class ApprovalDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_ALWAYS = "allow_always"


@dataclass
class TextToken:
    text: str


@dataclass
class ToolCallReceived:
    call: ToolCall


@dataclass
class ToolExecuting:
    call_id: str
    tool_name: str


@dataclass
class ToolCompleted:
    call_id: str
    result: ToolResult
    duration_ms: int


@dataclass
class AwaitingApproval:
    call: ToolCall


@dataclass
class AgentDone:
    """Terminal event for a successful or cancelled run."""

    full_content: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    cancelled: bool = False


@dataclass
class AgentError:
    message: str


AgentEvent = Union[
    TextToken,
    ToolCallReceived,
    ToolExecuting,
    ToolCompleted,
    AwaitingApproval,
    AgentDone,
    AgentError,
]
