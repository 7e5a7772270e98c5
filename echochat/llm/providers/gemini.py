"""
Google Gemini ``generateContent`` provider.

Streaming uses ``:streamGenerateContent?alt=sse``.  Gemini sends each
function call whole in a single part and has no terminal frame, so the
stream ends when the body does.
"""

from __future__ import annotations

import base64
import json
import logging

from echochat.llm.errors import InvalidResponse
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
    Role,
    StopReason,
    StreamEvent,
    Token,
    ToolCall,
    ToolDefinition,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def clean_schema(schema: dict) -> dict:
    """Drop JSON-schema keys the Gemini API rejects, recursively."""
    cleaned: dict = {}
    for key, value in schema.items():
        if key in ("additionalProperties", "$schema"):
            continue
        if isinstance(value, dict):
            if key == "properties":
                value = {name: clean_schema(sub) for name, sub in value.items()}
            else:
                value = clean_schema(value)
        cleaned[key] = value
    return cleaned


def _function_declaration(tool: ToolDefinition) -> dict:
    decl: dict = {"name": tool.name, "description": tool.description}
    params = clean_schema(tool.parameters or {})
    if params.get("properties"):
        decl["parameters"] = params
    return decl


class GeminiStreamParser(StreamParser):
    """Maps ``streamGenerateContent`` chunks onto stream events."""

    def __init__(self) -> None:
        super().__init__()
        self._saw_tool_call = False
        self._call_count = 0

    def handle_event(self, data: dict) -> list[StreamEvent]:
        if "error" in data:
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            return self.fail(message or "Unknown stream error")

        usage = data.get("usageMetadata") or {}
        self.record_usage(usage.get("promptTokenCount"), usage.get("candidatesTokenCount"))

        candidates = data.get("candidates") or []
        if not candidates:
            return []
        candidate = candidates[0]
        if candidate.get("finishReason") == "MAX_TOKENS":
            self.stop_reason = StopReason.MAX_TOKENS

        events: list[StreamEvent] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text")
            if text and not part.get("thought"):
                events.append(Token(text=text))
            call = part.get("functionCall")
            if call:
                self._saw_tool_call = True
                call_id = f"call_{self._call_count}"
                self._call_count += 1
                events.extend(
                    self.assembler.feed(
                        RawToolDelta(
                            key=call_id,
                            id=call_id,
                            name_delta=call.get("name", ""),
                            args_delta=json.dumps(call.get("args") or {}),
                            done=True,
                        )
                    )
                )
        return events

    def final_stop_reason(self) -> StopReason:
        if self._saw_tool_call:
            return StopReason.TOOL_USE
        return self.stop_reason or StopReason.END_TURN


class GeminiProvider(Provider):
    """
    Provider for the Gemini ``v1beta`` REST API.

    Parameters
    ----------
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport override.
    """

    @property
    def provider_id(self) -> ProviderId:
        return ProviderId.GEMINI

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    @staticmethod
    def _base_url(base_url: str | None) -> str:
        return (base_url or DEFAULT_BASE_URL).rstrip("/")

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key, "content-type": "application/json"}

    @staticmethod
    def build_contents(messages: list[ChatMessage]) -> list[dict]:
        # functionResponse parts are matched by name, not id.
        call_names: dict[str, str] = {}
        contents = []
        for msg in messages:
            parts: list[dict] = []
            for img in msg.images:
                parts.append({
                    "inlineData": {
                        "mimeType": img.mime_type,
                        "data": base64.b64encode(img.data).decode("ascii"),
                    }
                })
            if msg.content or not (msg.tool_calls or msg.tool_results):
                parts.append({"text": msg.content})
            for tc in msg.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
            for result in msg.tool_results:
                key = "error" if result.is_error else "content"
                parts.append({
                    "functionResponse": {
                        "name": call_names.get(result.call_id, result.call_id),
                        "response": {key: result.content},
                    }
                })
            role = "model" if msg.role == Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": parts})
        return contents

    def build_body(self, request: ChatRequest) -> dict:
        body: dict = {"contents": self.build_contents(request.messages)}
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        config: dict = {}
        temperature = effective_temperature(request.temperature)
        if temperature is not None:
            config["temperature"] = temperature
        if request.max_tokens:
            config["maxOutputTokens"] = request.max_tokens
        if config:
            body["generationConfig"] = config
        if request.tools:
            body["tools"] = [
                {"functionDeclarations": [_function_declaration(t) for t in request.tools]}
            ]
        return body

    def build_stream_request(self, request: ChatRequest) -> tuple[str, dict[str, str], dict]:
        url = (
            f"{self._base_url(request.base_url)}/models/"
            f"{request.model}:streamGenerateContent?alt=sse"
        )
        return url, self._headers(request.api_key), self.build_body(request)

    def new_parser(self) -> GeminiStreamParser:
        return GeminiStreamParser()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def validate_credentials(
        self, api_key: str, base_url: str | None = None
    ) -> list[ModelInfo]:
        url = f"{self._base_url(base_url)}/models"
        data = await self._request_json("GET", url, self._headers(api_key))
        models = []
        for m in data.get("models") or []:
            if "generateContent" not in (m.get("supportedGenerationMethods") or []):
                continue
            model_id = m.get("name", "").removeprefix("models/")
            models.append(
                ModelInfo(
                    id=model_id,
                    name=m.get("displayName") or model_id,
                    features=[Feature.CHAT, Feature.STREAMING, Feature.FUNCTION_CALLING],
                )
            )
        return models

    async def send_message(self, request: ChatRequest) -> ChatResponse:
        url = f"{self._base_url(request.base_url)}/models/{request.model}:generateContent"
        data = await self._request_json(
            "POST", url, self._headers(request.api_key), self.build_body(request), request
        )

        candidates = data.get("candidates") or []
        if not candidates:
            raise InvalidResponse("No candidates in response")
        candidate = candidates[0]

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text") and not part.get("thought"):
                text_parts.append(part["text"])
            call = part.get("functionCall")
            if call:
                tool_calls.append(
                    ToolCall(
                        id=f"call_{len(tool_calls)}",
                        name=call.get("name", ""),
                        arguments=call.get("args") or {},
                    )
                )

        content = "".join(text_parts)
        if not content and not tool_calls:
            raise InvalidResponse("No content in response")

        if tool_calls:
            stop_reason = StopReason.TOOL_USE
        elif candidate.get("finishReason") == "MAX_TOKENS":
            stop_reason = StopReason.MAX_TOKENS
        else:
            stop_reason = StopReason.END_TURN

        usage = data.get("usageMetadata") or {}
        return ChatResponse(
            content=content,
            model=request.model,
            tokens_in=usage.get("promptTokenCount"),
            tokens_out=usage.get("candidatesTokenCount"),
            tool_calls=tool_calls,
            stop_reason=stop_reason,
        )
