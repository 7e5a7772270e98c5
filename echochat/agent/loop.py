"""
Agent loop -- drives multi-step tool use on top of the provider router.

Each iteration:
1. Streams one model response (text tokens are forwarded as they arrive)
2. Collects the completed tool calls
3. Stops if the model did not ask for tools
4. Otherwise gates each call on approval, executes it, and appends the
   assistant turn plus a tool-results turn to the conversation
5. Loops, up to ``max_iterations`` model calls

Cancellation is checked at every suspension point and ends the run with
``AgentDone`` carrying the text produced so far.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Awaitable

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
from echochat.llm.channel import (
    DEFAULT_CAPACITY,
    CancellationToken,
    ChannelClosed,
    EventChannel,
)
from echochat.llm.errors import ProviderError
from echochat.llm.router import ProviderRouter
from echochat.llm.types import (
    ChatMessage,
    ChatRequest,
    Done,
    ProviderId,
    Role,
    StopReason,
    StreamError,
    StreamEvent,
    Token,
    ToolCall,
    ToolCallComplete,
    ToolResult,
)
from echochat.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Tool call denied by user"

_CANCELLED = object()


async def _unless_cancelled(
    aw: Awaitable[Any],
    cancel: CancellationToken,
    events: EventChannel | None = None,
) -> Any:
    """
    Await *aw*, or return ``_CANCELLED`` as soon as *cancel* fires.

    When *events* is given, raise ``ChannelClosed`` as soon as its consumer
    closes it.  Cancellation wins if both happen.
    """
    task = asyncio.ensure_future(aw)
    if cancel.is_cancelled or (events is not None and events.closed):
        task.cancel()
    else:
        watchers = [asyncio.ensure_future(cancel.wait())]
        if events is not None:
            watchers.append(asyncio.ensure_future(events.wait_closed()))
        try:
            await asyncio.wait({task, *watchers}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (task, *watchers):
                if not t.done():
                    t.cancel()
    if cancel.is_cancelled:
        return _CANCELLED
    if events is not None and events.closed:
        raise ChannelClosed()
    return task.result()


@dataclasses.dataclass
class _Turn:
    """What one model call produced."""

    text: str = ""
    tool_calls: list[ToolCall] = dataclasses.field(default_factory=list)
    tokens_in: int | None = None
    tokens_out: int | None = None
    stop_reason: StopReason | None = None
    cancelled: bool = False


class AgentLoop:
    """
    Bounded tool-use loop.

    Parameters
    ----------
    router : ProviderRouter
        Dispatches each model call to its adapter.
    tools : ToolRegistry
        Tools the model may call.
    max_iterations : int
        Max model calls per run.  Exceeding it is an error.
    auto_approve_safe_tools : bool
        Skip approval for every tool that does not require it.
    stream_buffer : int
        Capacity of the per-iteration provider event channel.
    """

    def __init__(
        self,
        router: ProviderRouter,
        tools: ToolRegistry,
        max_iterations: int = 10,
        auto_approve_safe_tools: bool = True,
        stream_buffer: int = DEFAULT_CAPACITY,
    ) -> None:
        self.router = router
        self.tools = tools
        self.max_iterations = max_iterations
        self.stream_buffer = stream_buffer
        self.auto_approved: set[str] = set()
        if auto_approve_safe_tools:
            self.auto_approved.update(
                t.name for t in tools.list() if not tools.requires_approval(t.name)
            )
        self.total_tokens_in: int | None = None
        self.total_tokens_out: int | None = None

    async def run(
        self,
        provider_id: ProviderId,
        request: ChatRequest,
        events: EventChannel[AgentEvent],
        approvals: EventChannel[ApprovalDecision],
        cancel: CancellationToken,
    ) -> None:
        """
        Run the loop, emitting ``AgentEvent`` objects into *events*.

        The last event is always ``AgentDone`` or ``AgentError`` unless the
        consumer closes *events* first, in which case the run stops quietly.
        *events* is finished when this returns.
        """
        try:
            await self._run(provider_id, request, events, approvals, cancel)
        except ChannelClosed:
            logger.warning("Agent event receiver dropped, stopping agent loop")
        finally:
            events.finish()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _done(self, full_text: str, cancelled: bool = False) -> AgentDone:
        return AgentDone(
            full_content=full_text,
            tokens_in=self.total_tokens_in,
            tokens_out=self.total_tokens_out,
            cancelled=cancelled,
        )

    def _add_usage(self, turn: _Turn) -> None:
        if turn.tokens_in is not None:
            self.total_tokens_in = (self.total_tokens_in or 0) + turn.tokens_in
        if turn.tokens_out is not None:
            self.total_tokens_out = (self.total_tokens_out or 0) + turn.tokens_out

    async def _run(
        self,
        provider_id: ProviderId,
        request: ChatRequest,
        events: EventChannel[AgentEvent],
        approvals: EventChannel[ApprovalDecision],
        cancel: CancellationToken,
    ) -> None:
        messages = list(request.messages)
        full_text = ""

        for iteration in range(self.max_iterations + 1):
            if cancel.is_cancelled:
                await events.send(self._done(full_text, cancelled=True))
                return
            if iteration >= self.max_iterations:
                await events.send(
                    AgentError(f"Reached maximum iterations ({self.max_iterations})")
                )
                return

            logger.debug("Agent iteration %d", iteration + 1)
            req = dataclasses.replace(request, messages=list(messages))
            turn = await self._stream_turn(provider_id, req, events, cancel)
            if isinstance(turn, AgentError):
                await events.send(turn)
                return
            if turn.cancelled:
                await events.send(self._done(full_text + turn.text, cancelled=True))
                return

            self._add_usage(turn)
            full_text += turn.text

            if not turn.tool_calls or turn.stop_reason != StopReason.TOOL_USE:
                await events.send(self._done(full_text))
                return

            results = await self._execute_calls(turn.tool_calls, events, approvals, cancel)
            if isinstance(results, AgentError):
                await events.send(results)
                return
            if results is _CANCELLED:
                await events.send(self._done(full_text, cancelled=True))
                return

            messages.append(
                ChatMessage(role=Role.ASSISTANT, content=turn.text, tool_calls=turn.tool_calls)
            )
            messages.append(ChatMessage(role=Role.USER, tool_results=results))

    async def _provider_stream(
        self,
        provider_id: ProviderId,
        request: ChatRequest,
        sink: EventChannel[StreamEvent],
    ) -> None:
        try:
            await self.router.stream_message(provider_id, request, sink)
        except ChannelClosed:
            logger.debug("Provider stream abandoned by the agent loop")
        except ProviderError as e:
            logger.warning("Provider %s failed: %s", provider_id.value, e)
            try:
                await sink.send(StreamError(message=e.message))
            except ChannelClosed:
                logger.debug("Stream error dropped; the agent loop stopped listening")
        except Exception as e:
            logger.exception("Provider stream crashed")
            try:
                await sink.send(StreamError(message=str(e) or e.__class__.__name__))
            except ChannelClosed:
                logger.debug("Stream error dropped; the agent loop stopped listening")
        finally:
            sink.finish()

    async def _stream_turn(
        self,
        provider_id: ProviderId,
        request: ChatRequest,
        events: EventChannel[AgentEvent],
        cancel: CancellationToken,
    ) -> _Turn | AgentError:
        sink: EventChannel[StreamEvent] = EventChannel(self.stream_buffer)
        task = asyncio.create_task(self._provider_stream(provider_id, request, sink))
        turn = _Turn()
        try:
            while True:
                event = await _unless_cancelled(sink.recv(), cancel, events)
                if event is _CANCELLED:
                    turn.cancelled = True
                    return turn
                if event is None:
                    return turn
                if isinstance(event, Token):
                    turn.text += event.text
                    await events.send(TextToken(event.text))
                elif isinstance(event, ToolCallComplete):
                    turn.tool_calls.append(event.call)
                    await events.send(ToolCallReceived(event.call))
                elif isinstance(event, Done):
                    turn.tokens_in = event.tokens_in
                    turn.tokens_out = event.tokens_out
                    turn.stop_reason = event.stop_reason
                    return turn
                elif isinstance(event, StreamError):
                    return AgentError(event.message)
                # ToolCallStart / ToolCallDelta are progress only.
        finally:
            # The stream task is abandoned, not awaited.
            sink.close()
            if not task.done():
                task.cancel()

    async def _execute_calls(
        self,
        calls: list[ToolCall],
        events: EventChannel[AgentEvent],
        approvals: EventChannel[ApprovalDecision],
        cancel: CancellationToken,
    ) -> list[ToolResult] | AgentError | object:
        results: list[ToolResult] = []
        for call in calls:
            needs_approval = (
                self.tools.requires_approval(call.name)
                and call.name not in self.auto_approved
            )
            if needs_approval:
                await events.send(AwaitingApproval(call))
                decision = await _unless_cancelled(approvals.recv(), cancel, events)
                if decision is _CANCELLED:
                    return _CANCELLED
                if decision is None:
                    return AgentError("Approval channel closed")
                if decision == ApprovalDecision.DENY:
                    results.append(ToolResult(call.id, DENIED_MESSAGE, is_error=True))
                    continue
                if decision == ApprovalDecision.ALLOW_ALWAYS:
                    self.auto_approved.add(call.name)

            await events.send(ToolExecuting(call_id=call.id, tool_name=call.name))
            start = time.monotonic()
            result = await self.tools.execute(call)
            duration_ms = int((time.monotonic() - start) * 1000)
            await events.send(
                ToolCompleted(call_id=call.id, result=result, duration_ms=duration_ms)
            )
            results.append(result)
        return results
