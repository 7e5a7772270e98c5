"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import signal
from pathlib import Path

from rich.console import Console

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
from echochat.cli.output import OutputFormatter
from echochat.config import EchoConfig
from echochat.conversation.export import export_to_markdown
from echochat.conversation.models import Conversation, PersistedMessage
from echochat.conversation.replay import (
    ReplayError,
    load_chat_messages,
    prepare_edit,
    prepare_regeneration,
    truncate_title,
)
from echochat.conversation.store import SQLiteConversationStore
from echochat.llm.channel import CancellationToken, EventChannel
from echochat.llm.router import ProviderRouter
from echochat.llm.types import ProviderId, Role
from echochat.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_DECISIONS = {
    "y": ApprovalDecision.ALLOW,
    "yes": ApprovalDecision.ALLOW,
    "a": ApprovalDecision.ALLOW_ALWAYS,
    "always": ApprovalDecision.ALLOW_ALWAYS,
}

DEFAULT_TITLE = "New Conversation"


def _image_mime_type(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


class ChatHandler:
    """
    Manages the interactive chat loop.

    Streams agent events to the console, prompts for tool approval, and
    maps Ctrl-C during a response to the run's cancellation token.
    """

    def __init__(
        self,
        cfg: EchoConfig,
        router: ProviderRouter,
        registry: ToolRegistry,
        store: SQLiteConversationStore,
        conversation: Conversation,
        provider_id: ProviderId,
        api_key: str,
        agentic: bool = True,
        console: Console | None = None,
    ) -> None:
        self.cfg = cfg
        self.router = router
        self.registry = registry
        self.store = store
        self.conversation = conversation
        self.provider_id = provider_id
        self.api_key = api_key
        self.agentic = agentic
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self._always_allowed: set[str] = set()
        self._pending_images: list[Path] = []
        self._stale_read: asyncio.Future[str] | None = None
        self._call_names: dict[str, str] = {}
        self._running = True

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def ask_approval(
        self, event: AwaitingApproval, cancel: CancellationToken | None = None
    ) -> ApprovalDecision:
        """
        Rich-formatted approval prompt for a tool call.

        ``input()`` cannot be interrupted from the event loop, so when
        *cancel* fires first the call is denied and the blocked read is kept
        as stale.  The next read waits for it, so that line is consumed
        instead of being raced by two readers.
        """
        self.formatter.format_confirmation(event.call)
        await self._drain_stale_read()
        read = asyncio.get_running_loop().run_in_executor(
            None, input, "\n  Allow? [y]es / [N]o / [a]lways: "
        )
        if cancel is not None:
            stop = asyncio.ensure_future(cancel.wait())
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
            if not stop.done():
                stop.cancel()
            if not read.done():
                self._stale_read = read
                self.console.print(
                    "\n  [dim]Stopped, tool call denied. Press Enter to continue.[/dim]"
                )
                return ApprovalDecision.DENY
        try:
            response = (await read).strip().lower()
        except (EOFError, KeyboardInterrupt):
            return ApprovalDecision.DENY
        return _DECISIONS.get(response, ApprovalDecision.DENY)

    async def _drain_stale_read(self) -> None:
        if self._stale_read is None:
            return
        stale, self._stale_read = self._stale_read, None
        try:
            line = await stale
        except EOFError:
            logger.debug("stdin closed under an abandoned approval prompt")
        else:
            logger.debug("Discarding answer to abandoned approval prompt: %r", line)

    async def _read_line(self, prompt: str) -> str:
        await self._drain_stale_read()
        return await asyncio.get_running_loop().run_in_executor(None, input, prompt)

    # ------------------------------------------------------------------
    # Running a turn
    # ------------------------------------------------------------------

    def _new_agent(self) -> AgentLoop:
        agent = AgentLoop(
            router=self.router,
            tools=self.registry,
            max_iterations=self.cfg.agent.max_iterations if self.agentic else 1,
            auto_approve_safe_tools=self.cfg.agent.auto_approve_safe_tools,
            stream_buffer=self.cfg.agent.event_buffer,
        )
        agent.auto_approved.update(self._always_allowed)
        return agent

    async def render(
        self,
        event: AgentEvent,
        approvals: EventChannel[ApprovalDecision],
        cancel: CancellationToken | None = None,
    ) -> None:
        if isinstance(event, TextToken):
            self.console.print(event.text, end="", markup=False, highlight=False)
        elif isinstance(event, ToolCallReceived):
            self.formatter.format_tool_call(event.call)
        elif isinstance(event, AwaitingApproval):
            await approvals.send(await self.ask_approval(event, cancel))
        elif isinstance(event, ToolExecuting):
            self.console.print(f"  [dim]running {event.tool_name}...[/dim]")
        elif isinstance(event, ToolCompleted):
            self.formatter.format_tool_result(
                self._tool_name(event.call_id), event.result, event.duration_ms
            )

    def _tool_name(self, call_id: str) -> str:
        return self._call_names.get(call_id, "tool")

    async def run_turn(self, history: list[PersistedMessage]) -> None:
        """Send *history* through a fresh agent run and persist the reply."""
        tools = self.registry.definitions() if self.agentic else []
        request = build_request(
            self.cfg.provider,
            self.api_key,
            await load_chat_messages(self.store, history),
            system_prompt=self.conversation.system_prompt or self.cfg.chat.system_prompt,
            tools=tools,
        )

        events: EventChannel[AgentEvent] = EventChannel(self.cfg.agent.event_buffer)
        approvals: EventChannel[ApprovalDecision] = EventChannel()
        cancel = CancellationToken()
        agent = self._new_agent()
        self._call_names = {}

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.cancel)
            handles_sigint = True
        except (NotImplementedError, RuntimeError):
            handles_sigint = False

        task = asyncio.create_task(
            agent.run(self.provider_id, request, events, approvals, cancel)
        )
        final: AgentEvent | None = None
        try:
            self.console.print("[dim]assistant>[/dim] ", end="")
            async for event in events:
                if isinstance(event, ToolCallReceived):
                    self._call_names[event.call.id] = event.call.name
                if isinstance(event, (AgentDone, AgentError)):
                    final = event
                    continue
                await self.render(event, approvals, cancel)
            await task
        finally:
            approvals.finish()
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)

        self._always_allowed = set(agent.auto_approved)
        self.console.print()

        if isinstance(final, AgentError):
            self.console.print(f"[red]Error:[/red] {final.message}")
        elif isinstance(final, AgentDone):
            if final.cancelled and not final.full_content:
                self.console.print("[dim]Generation stopped[/dim]")
            if final.full_content:
                await self.store.insert_message(
                    self.conversation.id,
                    Role.ASSISTANT,
                    final.full_content,
                    model=self.cfg.provider.model,
                    tokens_in=final.tokens_in,
                    tokens_out=final.tokens_out,
                    parent_id=history[-1].id if history else None,
                )
            if final.tokens_in is not None or final.tokens_out is not None:
                self.console.print(
                    f"[dim]tokens in={final.tokens_in or 0} out={final.tokens_out or 0}[/dim]"
                )

    async def handle_input(self, user_input: str) -> None:
        """Persist the user message and run it through the agent."""
        active = await self.store.list_active_messages(self.conversation.id)
        msg = await self.store.insert_message(
            self.conversation.id,
            Role.USER,
            user_input,
            parent_id=active[-1].id if active else None,
        )
        for image in self._pending_images:
            await self.store.insert_attachment(
                msg.id, _image_mime_type(image), image.read_bytes(), filename=image.name
            )
        self._pending_images = []
        if self.conversation.title == DEFAULT_TITLE:
            self.conversation.title = truncate_title(user_input)
            await self.store.update_title(self.conversation.id, self.conversation.title)
        await self.run_turn(active + [msg])

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            messages = await self.store.list_active_messages(self.conversation.id)
            self.formatter.format_messages(messages)
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.registry.list())
            return True

        if cmd == "/regenerate":
            active = await self.store.list_active_messages(self.conversation.id)
            target = next((m for m in reversed(active) if m.role == Role.ASSISTANT), None)
            if target is None:
                self.console.print("  [red]Error:[/red] nothing to regenerate")
                return True
            try:
                history = await prepare_regeneration(
                    self.store, self.conversation.id, target.id
                )
            except ReplayError as e:
                self.console.print(f"  [red]Error:[/red] {e}")
                return True
            await self.run_turn(history)
            return True

        if cmd == "/attach":
            self._attach(arg)
            return True

        if cmd == "/edit":
            await self._edit(arg)
            return True

        if cmd == "/export":
            messages = await self.store.list_active_messages(self.conversation.id)
            self.console.print(
                export_to_markdown(self.conversation, messages), markup=False
            )
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit              - Exit the chat\n"
                "  /history           - Show the active conversation\n"
                "  /tools             - List available tools\n"
                "  /regenerate        - Regenerate the last reply\n"
                "  /edit <n> <text>   - Replace message n and resend\n"
                "  /attach <path>     - Send an image with the next message\n"
                "  /export            - Print the conversation as markdown\n"
                "  /help              - Show this help\n"
            )
            return True

        return False

    def _attach(self, arg: str) -> None:
        path = Path(arg.strip()).expanduser()
        if not arg.strip() or not path.is_file():
            self.console.print(f"  [red]Error:[/red] no such file: {arg.strip()}")
            return
        if not _image_mime_type(path).startswith("image/"):
            self.console.print(f"  [red]Error:[/red] not an image: {path.name}")
            return
        self._pending_images.append(path)
        self.console.print(f"  [dim]Attached {path.name} to the next message.[/dim]")

    async def _edit(self, arg: str) -> None:
        number, _, text = arg.partition(" ")
        if not number.isdigit() or not text.strip():
            self.console.print("  Usage: /edit <n> <new text>")
            return
        active = await self.store.list_active_messages(self.conversation.id)
        idx = int(number) - 1
        if not 0 <= idx < len(active):
            self.console.print(f"  [red]Error:[/red] no message {number}")
            return
        target = active[idx]
        try:
            history = await prepare_edit(
                self.store, self.conversation.id, target.id, text.strip()
            )
        except ReplayError as e:
            self.console.print(f"  [red]Error:[/red] {e}")
            return
        if target.role == Role.USER:
            await self.run_turn(history)
        else:
            self.console.print("  [dim]Message updated.[/dim]")

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            f"[bold]echochat[/bold] - {self.provider_id.display_name} "
            f"({self.cfg.provider.model})\n"
            "[dim]Type /help for commands, /quit to exit. "
            "Ctrl-C stops a response.[/dim]\n"
        )

        while self._running:
            try:
                user_input = (await self._read_line("you> ")).strip()
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            await self.handle_input(user_input)
