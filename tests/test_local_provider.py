"""Tests for the OpenAI-compatible local adapter."""

from __future__ import annotations

import json

import httpx
import pytest

from echochat.llm.channel import EventChannel
from echochat.llm.errors import InvalidResponse, NetworkError, RequestFailed
from echochat.llm.providers.local import LocalProvider, LocalStreamParser, api_root
from echochat.llm.types import (
    ChatMessage,
    ChatRequest,
    Done,
    ImageAttachment,
    Role,
    StopReason,
    Token,
    ToolCall,
    ToolCallComplete,
    ToolCallStart,
    ToolResult,
)


async def _aiter(chunks):
    for c in chunks:
        yield c


def _sse(*payloads) -> bytes:
    out = ""
    for p in payloads:
        out += f"data: {p if isinstance(p, str) else json.dumps(p)}\n\n"
    return out.encode()


async def _parse(body: bytes) -> list:
    return [e async for e in LocalStreamParser().parse(_aiter([body]))]


def _request(**kwargs) -> ChatRequest:
    defaults = dict(
        api_key="",
        model="llama3",
        messages=[ChatMessage(role=Role.USER, content="hi")],
        base_url="http://localhost:8080",
    )
    defaults.update(kwargs)
    return ChatRequest(**defaults)


def _tc(index, id=None, name=None, args=None) -> dict:
    func = {}
    if name is not None:
        func["name"] = name
    if args is not None:
        func["arguments"] = args
    tc = {"index": index, "function": func}
    if id:
        tc["id"] = id
    return {"choices": [{"delta": {"tool_calls": [tc]}}]}


class TestApiRoot:
    def test_appends_v1(self):
        assert api_root("http://localhost:8080/") == "http://localhost:8080/v1"

    def test_keeps_existing_v1(self):
        assert api_root("http://localhost:8080/v1/") == "http://localhost:8080/v1"

    def test_requires_base_url(self):
        with pytest.raises(RequestFailed, match="Base URL is required for Local provider"):
            api_root(None)


class TestLocalStreamParser:
    async def test_interleaved_tool_calls(self):
        body = _sse(
            _tc(0, id="call_a", name="echo", args=""),
            _tc(1, id="call_b", name="system_info", args=""),
            _tc(0, args="{\"message\": "),
            _tc(1, args="{}"),
            _tc(0, args="\"hi\"}"),
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        events = await _parse(body)

        starts = [e for e in events if isinstance(e, ToolCallStart)]
        assert [s.id for s in starts] == ["call_a", "call_b"]
        completes = [e.call for e in events if isinstance(e, ToolCallComplete)]
        assert completes == [
            ToolCall("call_a", "echo", {"message": "hi"}),
            ToolCall("call_b", "system_info", {}),
        ]
        assert events[-1] == Done(stop_reason=StopReason.TOOL_USE)

    async def test_stop_with_tool_calls_is_tool_use(self):
        body = _sse(_tc(0, id="c", name="echo", args="{}"),
                    {"choices": [{"delta": {}, "finish_reason": "stop"}]}, "[DONE]")
        assert (await _parse(body))[-1].stop_reason == StopReason.TOOL_USE

    async def test_usage_only_chunk(self):
        body = _sse(
            {"choices": [{"delta": {"content": "hi"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 1}},
            "[DONE]",
        )
        assert await _parse(body) == [
            Token("hi"),
            Done(tokens_in=3, tokens_out=1, stop_reason=StopReason.END_TURN),
        ]

    async def test_length_is_max_tokens(self):
        body = _sse({"choices": [{"delta": {"content": "x"}, "finish_reason": "length"}]}, "[DONE]")
        assert (await _parse(body))[-1].stop_reason == StopReason.MAX_TOKENS


class TestLocalRequest:
    def test_messages(self):
        messages = [
            ChatMessage(role=Role.USER, content="look", images=[ImageAttachment("image/jpeg", b"abc")]),
            ChatMessage(role=Role.ASSISTANT, tool_calls=[ToolCall("c1", "echo", {"message": "x"})]),
            ChatMessage(role=Role.USER, tool_results=[ToolResult("c1", "x")]),
        ]
        wire = LocalProvider.build_messages("Be nice", messages)

        assert wire[0] == {"role": "system", "content": "Be nice"}
        assert wire[1]["content"][1] == {
            "type": "image_url",
            "image_url": {"url": "data:image/jpeg;base64,YWJj"},
        }
        assert wire[2]["content"] is None
        assert wire[2]["tool_calls"][0]["function"] == {
            "name": "echo",
            "arguments": "{\"message\": \"x\"}",
        }
        assert wire[3] == {"role": "tool", "tool_call_id": "c1", "content": "x"}
        assert len(wire) == 4

    def test_bearer_only_with_key(self):
        assert "Authorization" not in LocalProvider._headers("")
        assert LocalProvider._headers("k")["Authorization"] == "Bearer k"


class TestLocalHttp:
    async def test_stream(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=_sse(
                {"choices": [{"delta": {"content": "pong"}}]}, "[DONE]"
            ))

        sink: EventChannel = EventChannel()
        provider = LocalProvider(transport=httpx.MockTransport(handler))
        await provider.stream_message(_request(temperature=0.5), sink)
        sink.finish()

        assert seen["url"] == "http://localhost:8080/v1/chat/completions"
        assert seen["body"]["stream"] is True
        assert seen["body"]["temperature"] == 0.5
        assert [e async for e in sink] == [Token("pong"), Done(stop_reason=StopReason.END_TURN)]

    async def test_stream_without_base_url(self):
        with pytest.raises(RequestFailed):
            await LocalProvider().stream_message(_request(base_url=None), EventChannel())

    async def test_connection_failure_names_server(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        provider = LocalProvider(transport=httpx.MockTransport(handler))
        with pytest.raises(NetworkError, match="Failed to connect to http://localhost:8080"):
            await provider.send_message(_request())

    async def test_send_message_matches_stream_text(self):
        content = "The quick brown fox"

        def handler(request):
            if json.loads(request.content)["stream"]:
                chunks = [{"choices": [{"delta": {"content": w}}]} for w in ("The ", "quick ", "brown ", "fox")]
                return httpx.Response(200, content=_sse(*chunks, "[DONE]"))
            return httpx.Response(200, json={
                "choices": [{"message": {"content": content}, "finish_reason": "stop"}],
            })

        provider = LocalProvider(transport=httpx.MockTransport(handler))
        resp = await provider.send_message(_request())

        sink: EventChannel = EventChannel()
        await provider.stream_message(_request(), sink)
        sink.finish()
        streamed = "".join([e.text async for e in sink if isinstance(e, Token)])

        assert streamed == resp.content == content
        assert resp.stop_reason == StopReason.END_TURN

    async def test_send_message_empty_choices(self):
        def handler(request):
            return httpx.Response(200, json={"choices": []})

        with pytest.raises(InvalidResponse):
            await LocalProvider(transport=httpx.MockTransport(handler)).send_message(_request())

    async def test_validate_lists_models(self):
        def handler(request):
            assert str(request.url) == "http://localhost:8080/v1/models"
            return httpx.Response(200, json={"data": [{"id": "llama3"}, {"id": "qwen"}]})

        provider = LocalProvider(transport=httpx.MockTransport(handler))
        models = await provider.validate_credentials("", "http://localhost:8080")
        assert [m.id for m in models] == ["llama3", "qwen"]
