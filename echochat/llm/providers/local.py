"""
OpenAI-compatible chat-completion provider for local servers.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- llama.cpp, vLLM, LM Studio, Ollama, LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import base64
import json
import logging

import httpx

from echochat.llm.errors import InvalidResponse, NetworkError, RequestFailed
from echochat.llm.providers.base import Provider, effective_temperature
from echochat.llm.sse import StreamParser
from echochat.llm.types import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    Feature,
    ModelInfo,
    ProviderId,
    RawToolDelta,
    StopReason,
    StreamEvent,
    Token,
    ToolCall,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


def api_root(base_url: str | None) -> str:
    """Return ``<base>/v1`` without doubling an existing ``/v1`` suffix."""
    if not base_url:
        raise RequestFailed("Base URL is required for Local provider")
    base = base_url.rstrip("/")
    if base.endswith("/v1"):
        return base
    return f"{base}/v1"


class LocalStreamParser(StreamParser):
    """
    Parses Chat Completions chunks.

    Each event has the form ``data: {json}``; the sentinel
    ``data: [DONE]`` terminates the stream.
    """

    def handle_payload(self, payload: str) -> list[StreamEvent]:
        if payload.strip() == "[DONE]":
            return self.complete()
        return super().handle_payload(payload)

    def handle_event(self, data: dict) -> list[StreamEvent]:
        if "error" in data:
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            return self.fail(message or "Unknown stream error")

        usage = data.get("usage") or {}
        self.record_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))

        choices = data.get("choices")
        if not choices:
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}

        events: list[StreamEvent] = []
        text = delta.get("content")
        if text:
            events.append(Token(text=text))

        for raw_tc in delta.get("tool_calls") or []:
            func = raw_tc.get("function") or {}
            events.extend(
                self.assembler.feed(
                    RawToolDelta(
                        key=raw_tc.get("index", 0),
                        id=raw_tc.get("id"),
                        name_delta=func.get("name") or "",
                        args_delta=func.get("arguments") or "",
                    )
                )
            )

        reason = choice.get("finish_reason")
        if reason:
            self.stop_reason = _FINISH_REASONS.get(reason, StopReason.END_TURN)
        return events

    def final_stop_reason(self) -> StopReason:
        # Some servers report "stop" even after emitting tool calls.
        if self.assembler.has_calls and self.stop_reason != StopReason.MAX_TOKENS:
            return StopReason.TOOL_USE
        return self.stop_reason or StopReason.END_TURN


class LocalProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    The base URL comes from each request; there is no default.  A bearer
    token is sent only when the request carries a non-empty key.

    Parameters
    ----------
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport override.
    """

    @property
    def provider_id(self) -> ProviderId:
        return ProviderId.LOCAL

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def build_messages(system_prompt: str | None, messages: list[ChatMessage]) -> list[dict]:
        wire: list[dict] = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})

        for msg in messages:
            for result in msg.tool_results:
                wire.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.content,
                })
            if msg.tool_results and not (msg.content or msg.images):
                continue

            m: dict = {"role": msg.role.value}
            if msg.images:
                parts: list[dict] = []
                if msg.content:
                    parts.append({"type": "text", "text": msg.content})
                for img in msg.images:
                    b64 = base64.b64encode(img.data).decode("ascii")
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{img.mime_type};base64,{b64}"},
                    })
                m["content"] = parts
            else:
                m["content"] = msg.content or (None if msg.tool_calls else "")

            if msg.tool_calls:
                m["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
            wire.append(m)
        return wire

    def build_body(self, request: ChatRequest, stream: bool) -> dict:
        body: dict = {
            "model": request.model,
            "messages": self.build_messages(request.system_prompt, request.messages),
            "stream": stream,
        }
        temperature = effective_temperature(request.temperature)
        if temperature is not None:
            body["temperature"] = temperature
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]
            body["tool_choice"] = "auto"
        return body

    def build_stream_request(self, request: ChatRequest) -> tuple[str, dict[str, str], dict]:
        url = f"{api_root(request.base_url)}/chat/completions"
        return url, self._headers(request.api_key), self.build_body(request, stream=True)

    def new_parser(self) -> LocalStreamParser:
        return LocalStreamParser()

    def network_error(
        self, exc: httpx.TransportError, request: ChatRequest | None = None
    ) -> NetworkError:
        base = request.base_url if request is not None else None
        if base:
            return NetworkError(f"Failed to connect to {base}: {exc}")
        return super().network_error(exc, request)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def validate_credentials(
        self, api_key: str, base_url: str | None = None
    ) -> list[ModelInfo]:
        url = f"{api_root(base_url)}/models"
        listing = ChatRequest(api_key=api_key, model="", messages=[], base_url=base_url)
        data = await self._request_json("GET", url, self._headers(api_key), request=listing)
        return [
            ModelInfo(
                id=m["id"],
                name=m["id"],
                features=[Feature.CHAT, Feature.STREAMING],
            )
            for m in data.get("data") or []
            if m.get("id")
        ]

    async def send_message(self, request: ChatRequest) -> ChatResponse:
        url = f"{api_root(request.base_url)}/chat/completions"
        data = await self._request_json(
            "POST",
            url,
            self._headers(request.api_key),
            self.build_body(request, stream=False),
            request,
        )

        choices = data.get("choices") or []
        if not choices:
            raise InvalidResponse("No choices in response")
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""

        tool_calls: list[ToolCall] = []
        for idx, raw_tc in enumerate(message.get("tool_calls") or []):
            func = raw_tc.get("function") or {}
            try:
                args = json.loads(func.get("arguments") or "{}")
            except json.JSONDecodeError:
                logger.error("Invalid JSON arguments for tool call %s", raw_tc.get("id"))
                args = {}
            tool_calls.append(
                ToolCall(
                    id=raw_tc.get("id") or f"call_{idx}",
                    name=func.get("name", ""),
                    arguments=args if isinstance(args, dict) else {},
                )
            )

        if not content and not tool_calls:
            raise InvalidResponse("No content in response")

        stop_reason = _FINISH_REASONS.get(choice.get("finish_reason") or "")
        if tool_calls:
            stop_reason = StopReason.TOOL_USE

        usage = data.get("usage") or {}
        return ChatResponse(
            content=content,
            model=data.get("model") or request.model,
            tokens_in=usage.get("prompt_tokens"),
            tokens_out=usage.get("completion_tokens"),
            tool_calls=tool_calls,
            stop_reason=stop_reason,
        )
