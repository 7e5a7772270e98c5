"""Built-in tools available to the agent."""

from __future__ import annotations

from echochat.tools.builtin.file_read import FileReadTool
from echochat.tools.builtin.file_write import FileWriteTool
from echochat.tools.builtin.shell_execute import ShellExecuteTool
from echochat.tools.builtin.system_info import SystemInfoTool
from echochat.tools.builtin.web_fetch import WebFetchTool
from echochat.tools.registry import ToolRegistry


def register_builtin_tools(registry: ToolRegistry, disabled: list[str] | None = None) -> ToolRegistry:
    """Register every built-in tool not named in *disabled*."""
    skip = set(disabled or ())
    for tool in (
        FileReadTool(),
        FileWriteTool(),
        ShellExecuteTool(),
        WebFetchTool(),
        SystemInfoTool(),
    ):
        if tool.name not in skip:
            registry.register(tool)
    return registry


__all__ = [
    "FileReadTool",
    "FileWriteTool",
    "ShellExecuteTool",
    "SystemInfoTool",
    "WebFetchTool",
    "register_builtin_tools",
]
