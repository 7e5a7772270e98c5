"""
Assembles streaming tool-call fragments into complete ToolCall objects.

Fragments (``RawToolDelta``) are accumulated per key -- a content-block
index, a tool-call index, or a synthesized id depending on the provider.
The assembler turns them into stream events:

  - ``ToolCallStart`` once the call's name is known,
  - one ``ToolCallDelta`` per argument fragment,
  - exactly one ``ToolCallComplete`` per call, on ``done=True`` or ``flush()``.

Arguments that are not valid JSON are replaced with ``{}`` and the failure
is recorded in ``self.errors``; the call itself is never dropped.
"""

from __future__ import annotations

import json
import logging

from echochat.llm.types import (
    RawToolDelta,
    StreamEvent,
    ToolCall,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
)

logger = logging.getLogger(__name__)


class ToolCallAssembler:
    """Buffers raw tool-call deltas and emits tool-call stream events."""

    def __init__(self) -> None:
        self._buf: dict[int | str, dict] = {}
        self._finished: set[int | str] = set()
        self.completed: list[ToolCall] = []
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: RawToolDelta) -> list[StreamEvent]:
        """
        Feed a single ``RawToolDelta`` into the assembler.

        Returns the stream events produced by this fragment.  Fragments for
        a call that has already completed are ignored.
        """
        if delta.key in self._finished:
            return []

        buf = self._buf.setdefault(
            delta.key,
            {"id": None, "name": "", "args": "", "started": False},
        )
        events: list[StreamEvent] = []

        if delta.id and not buf["id"]:
            buf["id"] = delta.id
        if delta.name_delta:
            buf["name"] += delta.name_delta

        if not buf["started"] and buf["name"]:
            buf["started"] = True
            events.append(ToolCallStart(id=self._call_id(delta.key), name=buf["name"]))
            # Arguments that arrived before the name are released now.
            if buf["args"]:
                events.append(ToolCallDelta(id=self._call_id(delta.key), fragment=buf["args"]))

        if delta.args_delta:
            buf["args"] += delta.args_delta
            if buf["started"]:
                events.append(
                    ToolCallDelta(id=self._call_id(delta.key), fragment=delta.args_delta)
                )

        if delta.done:
            events.extend(self._finalize(delta.key))
        return events

    def flush(self) -> list[StreamEvent]:
        """
        Finalize every call still buffered, whether or not a ``done``
        fragment was received.  Called at stream end.
        """
        events: list[StreamEvent] = []
        for key in list(self._buf):
            events.extend(self._finalize(key))
        return events

    @property
    def has_calls(self) -> bool:
        return bool(self._buf) or bool(self._finished)

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._buf.clear()
        self._finished.clear()
        self.completed.clear()
        self.errors.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call_id(self, key: int | str) -> str:
        buf = self._buf[key]
        if not buf["id"]:
            buf["id"] = key if isinstance(key, str) else f"call_{key}"
        return buf["id"]

    def _finalize(self, key: int | str) -> list[StreamEvent]:
        buf = self._buf.get(key)
        if buf is None:
            return []

        events: list[StreamEvent] = []
        call_id = self._call_id(key)
        name = buf["name"].strip()
        if not buf["started"]:
            events.append(ToolCallStart(id=call_id, name=name))

        raw_args = buf["args"].strip() or "{}"
        try:
            args = json.loads(raw_args)
        except (json.JSONDecodeError, ValueError) as exc:
            self.errors.append(f"tool_call_json_parse_failed key={key} err={exc}")
            logger.error(
                "Invalid JSON arguments for tool call %s (%s): %s",
                call_id, name, exc,
            )
            args = {}
        if not isinstance(args, dict):
            self.errors.append(f"tool_call_args_not_object key={key}")
            logger.error("Tool call %s arguments are not an object", call_id)
            args = {}

        del self._buf[key]
        self._finished.add(key)
        call = ToolCall(id=call_id, name=name, arguments=args)
        self.completed.append(call)
        events.append(ToolCallComplete(call=call))
        return events
