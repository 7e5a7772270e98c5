"""
Main CLI application for echochat.

Usage:
    echochat chat [--provider NAME] [--model NAME] [--profile NAME] [--conversation ID]
    echochat models [--provider NAME] [--base-url URL]
    echochat conversations list|show|export
    echochat tools list|info
    echochat config show|validate
    echochat version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from echochat import __version__
from echochat.config import EchoConfig, LoggingConfig, load_config

app = typer.Typer(name="echochat", help="echochat - multi-provider AI chat")
conversations_app = typer.Typer(help="Conversation history")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(conversations_app, name="conversations")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "echochat.yaml",
        Path.cwd() / "echochat.yml",
        Path.home() / ".config" / "echochat" / "config.yaml",
        Path.home() / ".echochat" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def setup_logging(cfg: LoggingConfig) -> None:
    """Route log records to stderr through rich, plus an optional file."""
    level = getattr(logging, cfg.level.upper(), logging.WARNING)
    handlers: list[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    ]
    if cfg.file:
        log_path = Path(cfg.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path), encoding="utf-8")
        fh.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(fh)

    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load(profile: str | None = None, **overrides) -> EchoConfig:
    try:
        cfg = load_config(_get_config_path(), profile=profile, cli_overrides=overrides)
    except ValueError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)
    setup_logging(cfg.logging)
    return cfg


def _resolve_provider(name: str):
    from echochat.llm.types import ProviderId

    try:
        return ProviderId.parse(name)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _resolve_api_key(cfg: EchoConfig, provider_id) -> str:
    from echochat.llm.types import ProviderId
    from echochat.secrets import EnvSecretStore

    api_key = EnvSecretStore().resolve(cfg.provider.api_key_env) or ""
    if not api_key and provider_id != ProviderId.LOCAL:
        console.print(
            f"[red]No API key:[/red] set ${cfg.provider.api_key_env} "
            f"for {provider_id.display_name}"
        )
        raise typer.Exit(1)
    return api_key


def _build_registry(cfg: EchoConfig):
    from echochat.tools.builtin import register_builtin_tools
    from echochat.tools.registry import ToolRegistry

    return register_builtin_tools(ToolRegistry(), disabled=cfg.agent.disabled_tools)


async def _open_store(cfg: EchoConfig):
    from echochat.conversation.store import SQLiteConversationStore

    store = SQLiteConversationStore(cfg.store.history_db)
    await store.init()
    return store


async def _setup_stack(cfg: EchoConfig, conversation_id: str | None, agentic: bool):
    """Wire up the full stack for chat."""
    from echochat.cli.chat import DEFAULT_TITLE, ChatHandler
    from echochat.llm.router import default_router

    provider_id = _resolve_provider(cfg.provider.provider)
    api_key = _resolve_api_key(cfg, provider_id)

    router = default_router(timeout=float(cfg.provider.timeout_seconds))
    registry = _build_registry(cfg)
    store = await _open_store(cfg)

    if conversation_id:
        conversation = await store.get_conversation(conversation_id)
        if conversation is None:
            await store.close()
            console.print(f"[red]Conversation not found:[/red] {conversation_id}")
            raise typer.Exit(1)
    else:
        conversation = await store.create_conversation(
            DEFAULT_TITLE,
            provider=provider_id.value,
            model=cfg.provider.model,
            system_prompt=cfg.chat.system_prompt,
        )

    handler = ChatHandler(
        cfg=cfg,
        router=router,
        registry=registry,
        store=store,
        conversation=conversation,
        provider_id=provider_id,
        api_key=api_key,
        agentic=agentic and cfg.agent.enabled,
        console=console,
    )
    return handler, store


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    provider: Optional[str] = typer.Option(None, help="Provider: gemini, claude or local"),
    model: Optional[str] = typer.Option(None, help="Model id"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Resume conversation ID"),
    no_agent: bool = typer.Option(False, "--no-agent", help="Disable tool use"),
):
    """Start an interactive chat session."""
    cfg = _load(profile, **{"provider.provider": provider, "provider.model": model})

    async def _run():
        handler, store = await _setup_stack(cfg, conversation, agentic=not no_agent)
        try:
            await handler.run_loop()
        finally:
            await store.close()

    asyncio.run(_run())


@app.command()
def models(
    provider: Optional[str] = typer.Option(None, help="Provider: gemini, claude or local"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Override the API base URL"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Validate credentials and list the provider's models."""
    from echochat.cli.output import OutputFormatter
    from echochat.llm.errors import ProviderError
    from echochat.llm.router import default_router

    cfg = _load(profile, **{"provider.provider": provider, "provider.api_base": base_url})
    provider_id = _resolve_provider(cfg.provider.provider)
    api_key = _resolve_api_key(cfg, provider_id)
    router = default_router(timeout=float(cfg.provider.timeout_seconds))

    try:
        found = asyncio.run(
            router.validate_credentials(provider_id, api_key, cfg.provider.api_base or None)
        )
    except ProviderError as e:
        console.print(f"[red]{provider_id.display_name}:[/red] {e.message} [dim]({e.code})[/dim]")
        raise typer.Exit(1)

    OutputFormatter(console).format_model_list(provider_id.display_name, found)


@conversations_app.command("list")
def conversations_list():
    """List stored conversations."""

    async def _run():
        from echochat.cli.output import OutputFormatter

        store = await _open_store(_load())
        try:
            OutputFormatter(console).format_conversation_list(await store.list_conversations())
        finally:
            await store.close()

    asyncio.run(_run())


@conversations_app.command("show")
def conversations_show(
    conversation_id: str = typer.Argument(..., help="Conversation ID"),
    all_messages: bool = typer.Option(False, "--all", help="Include inactive messages"),
):
    """Show a conversation's messages."""

    async def _run():
        from echochat.cli.output import OutputFormatter

        store = await _open_store(_load())
        try:
            if all_messages:
                messages = await store.list_messages(conversation_id)
            else:
                messages = await store.list_active_messages(conversation_id)
            OutputFormatter(console).format_messages(messages, show_inactive=all_messages)
        finally:
            await store.close()

    asyncio.run(_run())


@conversations_app.command("export")
def conversations_export(
    conversation_id: str = typer.Argument(..., help="Conversation ID"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file"),
):
    """Export a conversation as markdown."""
    from echochat.conversation.export import export_to_markdown

    async def _run():
        store = await _open_store(_load())
        try:
            conv = await store.get_conversation(conversation_id)
            if conv is None:
                return None
            return export_to_markdown(conv, await store.list_active_messages(conversation_id))
        finally:
            await store.close()

    text = asyncio.run(_run())
    if text is None:
        console.print(f"[red]Conversation not found:[/red] {conversation_id}")
        raise typer.Exit(1)
    if output is not None:
        output.write_text(text, encoding="utf-8")
        console.print(f"Exported to {output}")
    else:
        console.print(text, markup=False)


@tools_app.command("list")
def tools_list():
    """List registered tools."""
    from echochat.cli.output import OutputFormatter

    registry = _build_registry(_load())
    OutputFormatter(console).format_tool_list(registry.list())


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool name")):
    """Show tool details and schema."""
    from echochat.cli.output import OutputFormatter

    registry = _build_registry(_load())
    tool = registry.get(tool_name)
    if not tool:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)

    OutputFormatter(console).format_tool_info(tool)


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config."""
    from echochat.cli.output import OutputFormatter

    OutputFormatter(console).format_config(_load(profile).to_dict())


@config_app.command("validate")
def config_validate(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Validate config and show the effective provider."""
    from echochat.llm.types import ProviderId

    config_path = _get_config_path()
    try:
        cfg = load_config(config_path, profile=profile)
        provider_id = ProviderId.parse(cfg.provider.provider)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Provider: {provider_id.display_name} ({cfg.provider.model})")
    console.print(f"  Agent: {'enabled' if cfg.agent.enabled else 'disabled'} "
                  f"(max {cfg.agent.max_iterations} iterations)")
    console.print(f"  History: {cfg.store.history_db}")


@app.command()
def version():
    """Show version."""
    console.print(f"echochat v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
