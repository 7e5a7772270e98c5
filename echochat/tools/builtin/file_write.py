from __future__ import annotations

import asyncio
import os
from pathlib import Path

from echochat.tools.base import Tool, ToolError

BLOCKED_PREFIXES = ("/etc", "/usr", "/bin", "/sbin", "/boot", "/proc", "/sys", "/dev")


def is_blocked(path: str | Path) -> bool:
    p = str(path)
    return any(p == prefix or p.startswith(prefix + "/") for prefix in BLOCKED_PREFIXES)


def _resolve_target(path: Path) -> Path:
    # Non-strict so a dangling link resolves to the file it would create.
    return path.resolve()


class FileWriteTool(Tool):
    @property
    def name(self) -> str:
        return "file_write"

    @property
    def description(self) -> str:
        return (
            "Write content to a file at the given path. Creates the file if it "
            "doesn't exist, or overwrites it if it does."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        }

    @property
    def requires_approval(self) -> bool:
        return True

    async def execute(self, **kwargs) -> str:
        path = Path(os.path.abspath(Path(kwargs["path"]).expanduser()))
        content: str = kwargs["content"]

        # Lexical check first so no directories are created under a blocked root.
        if is_blocked(path):
            raise ToolError(f"Blocked: writing to '{path}' is not allowed")
        if not path.name:
            raise ToolError(f"Invalid path: no filename in '{path}'")

        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ToolError(f"Failed to create directories: {e.strerror or e}") from e

        try:
            resolved = _resolve_target(path)
        except OSError as e:
            raise ToolError(f"Cannot resolve path '{path}': {e.strerror or e}") from e
        if is_blocked(resolved):
            raise ToolError(f"Blocked: writing to '{resolved}' is not allowed")

        data = content.encode("utf-8")
        try:
            await asyncio.to_thread(resolved.write_bytes, data)
        except OSError as e:
            raise ToolError(f"Failed to write '{resolved}': {e.strerror or e}") from e
        return f"Successfully wrote {len(data)} bytes to {resolved}"
