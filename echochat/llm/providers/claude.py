"""
Anthropic Messages API provider.

Streams ``/messages`` with ``stream: true``.  Content blocks carry text,
base64 images, ``tool_use`` and ``tool_result`` entries; tool arguments
arrive as ``input_json_delta`` fragments keyed by content-block index.
"""

from __future__ import annotations

import base64
import logging

import httpx

from echochat.llm.errors import AuthError, InvalidResponse
from echochat.llm.providers.base import (
    Provider,
    effective_temperature,
    error_message,
)
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

DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192

FALLBACK_MODELS = [
    ("claude-opus-4-0-20250514", "Claude Opus 4"),
    ("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5"),
    ("claude-sonnet-4-0-20250514", "Claude Sonnet 4"),
    ("claude-haiku-3-5-20241022", "Claude Haiku 3.5"),
]

_STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
}

_MODEL_FEATURES = [Feature.CHAT, Feature.VISION, Feature.STREAMING, Feature.FUNCTION_CALLING]


def _fallback_models() -> list[ModelInfo]:
    return [
        ModelInfo(id=mid, name=name, features=list(_MODEL_FEATURES))
        for mid, name in FALLBACK_MODELS
    ]


class ClaudeStreamParser(StreamParser):
    """Maps Messages API stream events onto stream events."""

    def __init__(self) -> None:
        super().__init__()
        self._tool_blocks: set[int] = set()

    def handle_event(self, data: dict) -> list[StreamEvent]:
        etype = data.get("type")

        if etype == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self.record_usage(usage.get("input_tokens"), usage.get("output_tokens"))
            return []

        if etype == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            index = data.get("index", 0)
            self._tool_blocks.add(index)
            return self.assembler.feed(
                RawToolDelta(key=index, id=block.get("id"), name_delta=block.get("name", ""))
            )

        if etype == "content_block_delta":
            delta = data.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta":
                text = delta.get("text", "")
                return [Token(text=text)] if text else []
            if dtype == "input_json_delta":
                fragment = delta.get("partial_json", "")
                if not fragment:
                    return []
                return self.assembler.feed(
                    RawToolDelta(key=data.get("index", 0), args_delta=fragment)
                )
            return []

        if etype == "content_block_stop":
            index = data.get("index", 0)
            if index not in self._tool_blocks:
                return []
            return self.assembler.feed(RawToolDelta(key=index, done=True))

        if etype == "message_delta":
            reason = (data.get("delta") or {}).get("stop_reason")
            if reason:
                self.stop_reason = _STOP_REASONS.get(reason, StopReason.END_TURN)
            usage = data.get("usage") or {}
            self.record_usage(usage.get("input_tokens"), usage.get("output_tokens"))
            return []

        if etype == "message_stop":
            return self.complete()

        if etype == "error":
            err = data.get("error") or {}
            return self.fail(err.get("message") or "Unknown stream error")

        # ping and unknown event types
        return []


class ClaudeProvider(Provider):
    """
    Provider for the Anthropic Messages API.

    Parameters
    ----------
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport override.
    """

    @property
    def provider_id(self) -> ProviderId:
        return ProviderId.CLAUDE

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @staticmethod
    def _base_url(base_url: str | None) -> str:
        return (base_url or DEFAULT_BASE_URL).rstrip("/")

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def build_messages(messages: list[ChatMessage]) -> list[dict]:
        wire = []
        for msg in messages:
            if msg.is_plain_text:
                wire.append({"role": msg.role.value, "content": msg.content})
                continue

            blocks: list[dict] = []
            for img in msg.images:
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": img.mime_type,
                        "data": base64.b64encode(img.data).decode("ascii"),
                    },
                })
            for result in msg.tool_results:
                block = {
                    "type": "tool_result",
                    "tool_use_id": result.call_id,
                    "content": result.content,
                }
                if result.is_error:
                    block["is_error"] = True
                blocks.append(block)
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tc.arguments,
                })
            wire.append({"role": msg.role.value, "content": blocks})
        return wire

    def build_body(self, request: ChatRequest, stream: bool) -> dict:
        body: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": self.build_messages(request.messages),
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        temperature = effective_temperature(request.temperature)
        if temperature is not None:
            body["temperature"] = temperature
        if request.tools:
            body["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in request.tools
            ]
        if stream:
            body["stream"] = True
        return body

    def build_stream_request(self, request: ChatRequest) -> tuple[str, dict[str, str], dict]:
        url = f"{self._base_url(request.base_url)}/messages"
        return url, self._headers(request.api_key), self.build_body(request, stream=True)

    def new_parser(self) -> ClaudeStreamParser:
        return ClaudeStreamParser()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def validate_credentials(
        self, api_key: str, base_url: str | None = None
    ) -> list[ModelInfo]:
        url = f"{self._base_url(base_url)}/models"
        async with self._client() as client:
            try:
                resp = await client.get(url, headers=self._headers(api_key))
            except httpx.TransportError as exc:
                raise self.network_error(exc) from exc

        if resp.status_code in (401, 403):
            raise AuthError("Invalid API key")

        if resp.is_success:
            try:
                data = resp.json()
            except ValueError as exc:
                raise InvalidResponse(f"Failed to parse model list: {exc}") from exc
            models = [
                ModelInfo(
                    id=m["id"],
                    name=m.get("display_name") or m["id"],
                    features=list(_MODEL_FEATURES),
                )
                for m in data.get("data", [])
                if m.get("id")
            ]
            if not models:
                logger.warning("Claude model listing was empty; using fallback list")
                return _fallback_models()
            return models

        body = resp.text.lower()
        if "authentication" in body or "api_key" in body:
            raise AuthError(error_message(resp))

        logger.warning(
            "Claude model listing failed (%s); assuming the key is valid",
            resp.status_code,
        )
        return _fallback_models()

    async def send_message(self, request: ChatRequest) -> ChatResponse:
        url = f"{self._base_url(request.base_url)}/messages"
        data = await self._request_json(
            "POST",
            url,
            self._headers(request.api_key),
            self.build_body(request, stream=False),
            request,
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        arguments=block.get("input") or {},
                    )
                )

        content = "".join(text_parts)
        if not content and not tool_calls:
            raise InvalidResponse("No content in response")

        usage = data.get("usage") or {}
        return ChatResponse(
            content=content,
            model=data.get("model") or request.model,
            tokens_in=usage.get("input_tokens"),
            tokens_out=usage.get("output_tokens"),
            tool_calls=tool_calls,
            stop_reason=_STOP_REASONS.get(data.get("stop_reason") or ""),
        )
