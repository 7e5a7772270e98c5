"""Agent loop -- multi-step tool use with approval gating."""

from echochat.agent.events import (
    AgentDone,
    AgentError,
    AgentEvent,
    ApprovalDecision,
    AwaitingApproval,
    TextToken,
    ToolCallReceived,
    ToolCompleted,
    ToolExecuting,
)
from echochat.agent.loop import AgentLoop
from echochat.agent.request import build_request

__all__ = [
    "AgentDone",
    "AgentError",
    "AgentEvent",
    "AgentLoop",
    "ApprovalDecision",
    "AwaitingApproval",
    "TextToken",
    "ToolCallReceived",
    "ToolCompleted",
    "ToolExecuting",
    "build_request",
]
