from __future__ import annotations

import asyncio
from pathlib import Path

from echochat.tools.base import Tool, ToolError

MAX_READ_BYTES = 100_000


class FileReadTool(Tool):
    @property
    def name(self) -> str:
        return "file_read"

    @property
    def description(self) -> str:
        return "Read the contents of a file at the given path."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path of the file to read",
                },
            },
            "required": ["path"],
        }

    async def execute(self, **kwargs) -> str:
        path = kwargs["path"]
        try:
            resolved = Path(path).expanduser().resolve(strict=True)
        except OSError as e:
            raise ToolError(f"Cannot resolve path '{path}': {e.strerror or e}") from e

        try:
            raw = await asyncio.to_thread(resolved.read_bytes)
        except OSError as e:
            raise ToolError(f"Failed to read '{path}': {e.strerror or e}") from e

        if len(raw) > MAX_READ_BYTES:
            head = raw[:MAX_READ_BYTES].decode("utf-8", errors="replace")
            return (
                f"{head}...\n\n[Truncated: file is {len(raw)} bytes, "
                f"showing first {MAX_READ_BYTES:,}]"
            )
        return raw.decode("utf-8", errors="replace")
