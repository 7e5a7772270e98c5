"""
Server-Sent Events decoding shared by every provider stream.

``SSEDecoder`` turns arbitrary byte chunks into complete ``data`` payloads.
It is insensitive to how the body is chunked: multi-byte UTF-8 sequences,
CRLF pairs and frame delimiters may all be split across chunk boundaries.

``StreamParser`` is the per-stream base class.  Each provider subclasses it
and maps payloads to stream events; the base class owns decoding, usage
bookkeeping, tool-call assembly and the terminal ``Done``/``StreamError``.
"""

from __future__ import annotations

import codecs
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterable, AsyncIterator

import httpx

from echochat.llm.tool_call_assembler import ToolCallAssembler
from echochat.llm.types import Done, StopReason, StreamError, StreamEvent

logger = logging.getLogger(__name__)


class SSEDecoder:
    """Incremental SSE frame decoder."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Decode *chunk* and return the payloads of every frame it completes."""
        return self._drain(self._decoder.decode(chunk), final=False)

    def flush(self) -> list[str]:
        """Return the payload of a trailing, unterminated frame (if any)."""
        return self._drain(self._decoder.decode(b"", final=True), final=True)

    def _drain(self, text: str, *, final: bool) -> list[str]:
        buf = self._pending + text
        hold = ""
        # A trailing CR may be the first half of a CRLF pair.
        if not final and buf.endswith("\r"):
            buf, hold = buf[:-1], "\r"
        buf = buf.replace("\r\n", "\n").replace("\r", "\n")

        frames = buf.split("\n\n")
        rest = frames.pop()
        if final:
            frames.append(rest)
            self._pending = ""
        else:
            self._pending = rest + hold

        payloads = []
        for frame in frames:
            payload = self._frame_payload(frame)
            if payload:
                payloads.append(payload)
        return payloads

    @staticmethod
    def _frame_payload(frame: str) -> str | None:
        data_lines = []
        for line in frame.split("\n"):
            if not line.startswith("data:"):
                continue
            value = line[len("data:"):]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
        if not data_lines:
            return None
        return "\n".join(data_lines)


class StreamParser(ABC):
    """
    Converts one provider response body into a sequence of stream events.

    A parser instance holds the state of exactly one stream and must not be
    reused.  The emitted sequence always ends with a single ``Done`` or a
    single ``StreamError``.
    """

    def __init__(self) -> None:
        self.assembler = ToolCallAssembler()
        self.tokens_in: int | None = None
        self.tokens_out: int | None = None
        self.stop_reason: StopReason | None = None
        self.finished = False

    async def parse(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        decoder = SSEDecoder()
        try:
            async for chunk in chunks:
                for payload in decoder.feed(chunk):
                    for event in self.handle_payload(payload):
                        yield event
                    if self.finished:
                        return
        except httpx.HTTPError as exc:
            logger.warning("Stream read failed: %s", exc)
            yield StreamError(message=f"Stream read failed: {exc}")
            return

        for payload in decoder.flush():
            for event in self.handle_payload(payload):
                yield event
            if self.finished:
                return

        for event in self.complete():
            yield event

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def handle_payload(self, payload: str) -> list[StreamEvent]:
        """Decode one ``data`` payload as JSON and hand it to ``handle_event``."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Failed to parse SSE data: %s", payload[:200])
            return []
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object SSE data: %s", payload[:200])
            return []
        return self.handle_event(data)

    @abstractmethod
    def handle_event(self, data: dict) -> list[StreamEvent]:
        """Map one decoded provider event to stream events."""
        ...

    def final_stop_reason(self) -> StopReason | None:
        """Stop reason reported when the body ends without a terminal frame."""
        return self.stop_reason

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def record_usage(
        self, tokens_in: int | None = None, tokens_out: int | None = None
    ) -> None:
        if tokens_in is not None:
            self.tokens_in = tokens_in
        if tokens_out is not None:
            self.tokens_out = tokens_out

    def complete(self) -> list[StreamEvent]:
        """Finalize pending tool calls and emit the terminal ``Done``."""
        events = self.assembler.flush()
        events.append(
            Done(
                tokens_in=self.tokens_in,
                tokens_out=self.tokens_out,
                stop_reason=self.final_stop_reason(),
            )
        )
        self.finished = True
        return events

    def fail(self, message: str) -> list[StreamEvent]:
        logger.warning("Provider stream error: %s", message)
        self.finished = True
        return [StreamError(message=message)]
