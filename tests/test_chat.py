"""Tests for the interactive ChatHandler, driven without a terminal."""

from __future__ import annotations

import asyncio
import io
import threading
from pathlib import Path

import pytest
from rich.console import Console

from echochat.agent.events import ApprovalDecision, AwaitingApproval
from echochat.cli.chat import DEFAULT_TITLE, ChatHandler
from echochat.config import EchoConfig
from echochat.conversation.store import SQLiteConversationStore
from echochat.llm.channel import CancellationToken
from echochat.llm.errors import RateLimited
from echochat.llm.router import ProviderRouter
from echochat.llm.types import ImageAttachment, ProviderId, Role, ToolCall
from echochat.tools.registry import ToolRegistry
from tests.mock_providers import MockProvider, make_tool_call_provider, text_turn
from tests.mock_tools import EchoTool, WriteTool


@pytest.fixture
async def store(tmp_path: Path):
    s = SQLiteConversationStore(str(tmp_path / "chat.db"))
    await s.init()
    yield s
    await s.close()


async def _handler(store, provider: MockProvider, agentic: bool = True):
    router = ProviderRouter()
    router.register(provider)
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(WriteTool())
    conversation = await store.create_conversation(DEFAULT_TITLE)
    out = io.StringIO()
    handler = ChatHandler(
        cfg=EchoConfig(),
        router=router,
        registry=registry,
        store=store,
        conversation=conversation,
        provider_id=ProviderId.LOCAL,
        api_key="",
        agentic=agentic,
        console=Console(file=out, width=120),
    )
    return handler, out


class TestChatTurns:
    async def test_reply_is_persisted(self, store):
        provider = MockProvider([text_turn("Hello there", tokens_in=7, tokens_out=2)])
        handler, out = await _handler(store, provider)

        await handler.handle_input("Say hello")

        active = await store.list_active_messages(handler.conversation.id)
        assert [(m.role, m.content) for m in active] == [
            (Role.USER, "Say hello"),
            (Role.ASSISTANT, "Hello there"),
        ]
        assert active[1].parent_id == active[0].id
        assert (active[1].tokens_in, active[1].tokens_out) == (7, 2)
        assert "Hello there" in out.getvalue()
        assert "tokens in=7 out=2" in out.getvalue()

    async def test_first_message_sets_title(self, store):
        handler, _ = await _handler(store, MockProvider([text_turn("ok")]))
        await handler.handle_input("x" * 60 + "\nmore")
        stored = await store.get_conversation(handler.conversation.id)
        assert stored.title == "x" * 47 + "..."

        await handler.handle_input("second message")
        assert (await store.get_conversation(handler.conversation.id)).title == stored.title

    async def test_history_is_sent(self, store):
        provider = MockProvider([text_turn("one"), text_turn("two")])
        handler, _ = await _handler(store, provider)
        await handler.handle_input("first")
        await handler.handle_input("second")
        sent = provider.requests[-1].messages
        assert [m.content for m in sent] == ["first", "one", "second"]

    async def test_agent_error_is_reported_and_not_persisted(self, store):
        handler, out = await _handler(store, MockProvider([RateLimited(7)]))
        await handler.handle_input("hi")
        assert "Rate limited, retry after 7s" in out.getvalue()
        active = await store.list_active_messages(handler.conversation.id)
        assert [m.role for m in active] == [Role.USER]

    async def test_non_agentic_sends_no_tools(self, store):
        provider = MockProvider([text_turn("plain")])
        handler, _ = await _handler(store, provider, agentic=False)
        await handler.handle_input("hi")
        assert provider.requests[0].tools == []

    async def test_agentic_sends_tools(self, store):
        provider = MockProvider([text_turn("plain")])
        handler, _ = await _handler(store, provider)
        await handler.handle_input("hi")
        assert {t.name for t in provider.requests[0].tools} == {"echo", "write_file"}


class TestApprovalPrompt:
    async def test_always_persists_across_turns(self, store, monkeypatch):
        answers = []

        def fake_input(prompt=""):
            answers.append(prompt)
            return "a"

        monkeypatch.setattr("builtins.input", fake_input)
        provider = MockProvider([
            *make_tool_call_provider("write_file", {"path": "/tmp/x", "content": "1"})._turns,
            *make_tool_call_provider("write_file", {"path": "/tmp/y", "content": "2"})._turns,
        ])
        handler, _ = await _handler(store, provider)

        await handler.handle_input("write x")
        await handler.handle_input("write y")

        assert len(answers) == 1
        assert "write_file" in handler._always_allowed
        write_tool = handler.registry.get("write_file")
        assert [c["path"] for c in write_tool.calls] == ["/tmp/x", "/tmp/y"]

    async def test_deny_by_default(self, store, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt="": "")
        provider = make_tool_call_provider("write_file", {"path": "/tmp/x", "content": "1"})
        handler, _ = await _handler(store, provider)

        await handler.handle_input("write x")

        assert handler.registry.get("write_file").calls == []
        denial = provider.requests[-1].messages[-1].tool_results[0]
        assert denial.content == "Tool call denied by user"
        assert denial.is_error

    async def test_cancel_while_prompt_blocks(self, store, monkeypatch):
        release = threading.Event()
        prompts = []

        def blocking_input(prompt=""):
            prompts.append(prompt)
            if len(prompts) == 1:
                release.wait(5)
                return "y"
            return "next line"

        monkeypatch.setattr("builtins.input", blocking_input)
        handler, out = await _handler(store, MockProvider())
        cancel = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, cancel.cancel)

        try:
            decision = await asyncio.wait_for(
                handler.ask_approval(
                    AwaitingApproval(ToolCall("c1", "write_file", {"path": "x"})), cancel
                ),
                timeout=2,
            )
            assert decision == ApprovalDecision.DENY
            assert "Press Enter to continue" in out.getvalue()
        finally:
            release.set()

        # The abandoned prompt takes the next line; the new read gets its own.
        assert await handler._read_line("you> ") == "next line"
        assert handler._stale_read is None
        assert prompts[-1] == "you> "


class TestCommands:
    async def test_regenerate_replaces_last_reply(self, store):
        provider = MockProvider([text_turn("first try"), text_turn("second try")])
        handler, _ = await _handler(store, provider)
        await handler.handle_input("question")

        assert await handler.handle_command("/regenerate") is True

        active = await store.list_active_messages(handler.conversation.id)
        assert [m.content for m in active] == ["question", "second try"]
        everything = await store.list_messages(handler.conversation.id)
        assert [m.is_active for m in everything] == [True, False, True]

    async def test_regenerate_with_nothing(self, store):
        handler, out = await _handler(store, MockProvider())
        await handler.handle_command("/regenerate")
        assert "nothing to regenerate" in out.getvalue()

    async def test_edit_user_message_resends(self, store):
        provider = MockProvider([text_turn("about cats"), text_turn("about dogs")])
        handler, _ = await _handler(store, provider)
        await handler.handle_input("tell me about cats")

        await handler.handle_command("/edit 1 tell me about dogs")

        active = await store.list_active_messages(handler.conversation.id)
        assert [m.content for m in active] == ["tell me about dogs", "about dogs"]
        assert provider.call_count == 2

    async def test_edit_assistant_message_does_not_resend(self, store):
        provider = MockProvider([text_turn("draft")])
        handler, out = await _handler(store, provider)
        await handler.handle_input("hi")

        await handler.handle_command("/edit 2 polished")

        active = await store.list_active_messages(handler.conversation.id)
        assert active[-1].content == "polished"
        assert provider.call_count == 1
        assert "Message updated." in out.getvalue()

    async def test_edit_usage(self, store):
        handler, out = await _handler(store, MockProvider())
        await handler.handle_command("/edit nope")
        assert "Usage: /edit <n> <new text>" in out.getvalue()

    async def test_quit(self, store):
        handler, _ = await _handler(store, MockProvider())
        assert await handler.handle_command("/quit") is True
        assert handler._running is False

    async def test_unknown_command_not_handled(self, store):
        handler, _ = await _handler(store, MockProvider())
        assert await handler.handle_command("/dance") is False

    async def test_attach_sends_and_replays_image(self, store, tmp_path):
        image = tmp_path / "cat.png"
        image.write_bytes(b"\x89PNG-cat")
        provider = MockProvider([text_turn("a cat"), text_turn("still a cat")])
        handler, _ = await _handler(store, provider)

        await handler.handle_command(f"/attach {image}")
        await handler.handle_input("what is this?")
        await handler.handle_command("/regenerate")

        for request in provider.requests:
            assert request.messages[-1].images == [ImageAttachment("image/png", b"\x89PNG-cat")]

    async def test_attach_rejects_non_image(self, store, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("hi")
        handler, out = await _handler(store, MockProvider())
        await handler.handle_command(f"/attach {notes}")
        assert "not an image: notes.txt" in out.getvalue()
        assert handler._pending_images == []
