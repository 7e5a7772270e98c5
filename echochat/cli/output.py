"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from echochat.conversation.models import Conversation, PersistedMessage
from echochat.llm.types import ModelInfo, Role, ToolCall, ToolResult
from echochat.tools.base import Tool


def _approval_text(tool: Tool) -> Text:
    if tool.requires_approval:
        return Text("required", style="yellow")
    return Text("auto", style="green")


class OutputFormatter:
    """Rich-based output formatting for the echochat CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[Tool]) -> None:
        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Approval", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            table.add_row(t.name, _approval_text(t), t.description)

        self.console.print(table)

    def format_tool_info(self, tool: Tool) -> None:
        approval = "required" if tool.requires_approval else "not required"
        self.console.print(Panel(
            f"[bold]{tool.name}[/bold]\n\n"
            f"[dim]Approval:[/dim] {approval}\n\n"
            f"{tool.description}",
            title=f"Tool: {tool.name}",
        ))
        schema_json = json.dumps(tool.definition().parameters, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_model_list(self, provider: str, models: list[ModelInfo]) -> None:
        if not models:
            self.console.print(f"[dim]No models reported by {provider}.[/dim]")
            return
        table = Table(title=f"Models ({provider})")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Features", style="dim")
        for m in models:
            table.add_row(m.id, m.name, ", ".join(f.value for f in m.features))
        self.console.print(table)

    def format_conversation_list(self, conversations: list[Conversation]) -> None:
        if not conversations:
            self.console.print("[dim]No conversations found.[/dim]")
            return

        table = Table(title="Conversations")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Model", no_wrap=True)
        table.add_column("Updated", no_wrap=True)

        for c in conversations:
            table.add_row(c.id, c.title, c.model, c.updated_at[:16].replace("T", " "))

        self.console.print(table)

    def format_messages(self, messages: list[PersistedMessage], show_inactive: bool = False) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return

        for idx, msg in enumerate(messages, start=1):
            if msg.role == Role.USER:
                label, color = "you", "blue"
            else:
                label, color = msg.model or "assistant", "green"
            marker = "" if msg.is_active else " [dim](inactive)[/dim]"
            if not msg.is_active and not show_inactive:
                continue
            preview = msg.content if len(msg.content) <= 200 else msg.content[:200] + "..."
            self.console.print(f"  [{color}]{idx:>3} {label}>[/{color}]{marker} ", end="")
            self.console.print(preview, markup=False)

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

    def format_tool_call(self, call: ToolCall) -> None:
        args = json.dumps(call.arguments, default=str)
        if len(args) > 120:
            args = args[:117] + "..."
        self.console.print(f"\n  [yellow]> {call.name}[/yellow] [dim]{args}[/dim]")

    def format_tool_result(self, tool_name: str, result: ToolResult, duration_ms: int) -> None:
        status = "[red]FAILED[/red]" if result.is_error else "[green]OK[/green]"
        first_line = result.content.splitlines()[0] if result.content else ""
        if len(first_line) > 160:
            first_line = first_line[:157] + "..."
        self.console.print(f"  [{tool_name}] {status} [dim]{duration_ms}ms[/dim] ", end="")
        self.console.print(first_line, markup=False)

    def format_confirmation(self, call: ToolCall) -> None:
        args_str = json.dumps(call.arguments, indent=2, default=str)
        self.console.print(
            "\n[bold yellow]Tool call requires approval[/bold yellow]\n"
            f"  [bold]Tool:[/bold]  {call.name}\n"
            f"  [bold]Args:[/bold]"
        )
        self.console.print(Syntax(args_str, "json", theme="monokai"))
