from __future__ import annotations

import os
import platform
import socket
from pathlib import Path

from echochat.tools.base import Tool


class SystemInfoTool(Tool):
    @property
    def name(self) -> str:
        return "system_info"

    @property
    def description(self) -> str:
        return "Get basic information about the local system: OS, hostname and directories."

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs) -> str:
        try:
            cwd = os.getcwd()
        except OSError:
            cwd = "unknown"
        home = os.environ.get("HOME") or str(Path.home())
        return (
            f"OS: {platform.system().lower() or 'unknown'}\n"
            f"Hostname: {socket.gethostname() or 'unknown'}\n"
            f"Current directory: {cwd}\n"
            f"Home directory: {home}"
        )
