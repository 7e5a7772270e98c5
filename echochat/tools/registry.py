from __future__ import annotations

import logging
import time

from echochat.llm.types import ToolCall, ToolDefinition, ToolResult
from echochat.tools.base import Tool, ToolError
from echochat.tools.validation import ToolValidator

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise KeyError(name)
        return t

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition() for t in self.list()]

    def requires_approval(self, name: str) -> bool:
        """Unknown tools always require approval."""
        tool = self.get(name)
        if tool is None:
            return True
        return tool.requires_approval

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: ToolCall) -> ToolResult:
        """
        Run *call* and fold every outcome into a ``ToolResult``.

        Lookup, argument validation and execution failures all become
        error results; nothing raises to the caller.
        """
        tool = self.get(call.name)
        if tool is None:
            return ToolResult(call.id, f"Unknown tool: {call.name}", is_error=True)

        valid, error_msg = ToolValidator.validate(tool, call.arguments)
        if not valid:
            return ToolResult(call.id, error_msg or "Invalid arguments", is_error=True)

        start = time.monotonic()
        try:
            content = await tool.execute(**call.arguments)
        except ToolError as e:
            return ToolResult(call.id, str(e), is_error=True)
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            return ToolResult(call.id, f"Tool exception: {e}", is_error=True)
        finally:
            logger.debug(
                "Tool %s finished in %dms",
                call.name, int((time.monotonic() - start) * 1000),
            )
        return ToolResult(call.id, content)
