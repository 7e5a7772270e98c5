"""Local shell command execution."""

from __future__ import annotations

import asyncio
import logging
import time

from echochat.tools.base import Tool, ToolError

logger = logging.getLogger(__name__)

TIMEOUT_SECS = 30
# Cap combined output returned to the model.
MAX_OUTPUT_BYTES = 50_000


async def run_shell(command: str, timeout: float = TIMEOUT_SECS) -> tuple[int, bytes, bytes]:
    """Run *command* under ``sh -c``; kill it if it outlives *timeout*."""
    t0 = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        "sh", "-c", command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), timeout=5)
        except (ProcessLookupError, asyncio.TimeoutError):
            pass
        raise
    finally:
        logger.debug(
            "shell exited in %dms: %s",
            round((time.monotonic() - t0) * 1000), command[:80],
        )
    return proc.returncode if proc.returncode is not None else -1, stdout_raw, stderr_raw


def _truncate(text: str) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= MAX_OUTPUT_BYTES:
        return text
    head = raw[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return head + "\n...[output truncated]"


class ShellExecuteTool(Tool):
    def __init__(self, timeout: float = TIMEOUT_SECS) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "shell_execute"

    @property
    def description(self) -> str:
        return (
            "Execute a shell command and return its output. "
            f"Commands run with a {int(self._timeout)}-second timeout."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
            },
            "required": ["command"],
        }

    @property
    def requires_approval(self) -> bool:
        return True

    async def execute(self, **kwargs) -> str:
        command = kwargs["command"]
        try:
            exit_code, stdout_raw, stderr_raw = await run_shell(command, self._timeout)
        except asyncio.TimeoutError:
            raise ToolError(
                f"Command timed out after {int(self._timeout)} seconds"
            ) from None
        except OSError as e:
            raise ToolError(f"Failed to execute command: {e}") from e

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")

        output = stdout
        if stderr:
            if output:
                output += "\n--- stderr ---\n"
            output += stderr
        if not output:
            output = f"Command completed with exit code {exit_code}"
        output = _truncate(output)

        if exit_code != 0:
            raise ToolError(f"Exit code: {exit_code}\n{output}")
        return output
