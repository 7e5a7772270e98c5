"""Abstract base class and shared HTTP plumbing for LLM providers."""

from __future__ import annotations

import contextlib
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

import httpx

from echochat.llm.channel import ChannelClosed, EventChannel
from echochat.llm.errors import (
    AuthError,
    InvalidResponse,
    NetworkError,
    ProviderError,
    RateLimited,
    RequestFailed,
)
from echochat.llm.sse import StreamParser
from echochat.llm.types import (
    ChatRequest,
    ChatResponse,
    ModelInfo,
    ProviderId,
    StreamEvent,
)

logger = logging.getLogger(__name__)

NEUTRAL_TEMPERATURE = 1.0


def effective_temperature(temperature: float | None) -> float | None:
    """Return *temperature* unless it is unset or the neutral default."""
    if temperature is None or abs(temperature - NEUTRAL_TEMPERATURE) < 1e-9:
        return None
    return temperature


def error_message(response: httpx.Response) -> str:
    """Build ``"HTTP <code>: <message>"`` from a failed response."""
    message = ""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            message = str(err.get("message") or "")
        elif isinstance(err, str):
            message = err
        elif isinstance(data.get("message"), str):
            message = data["message"]
    if not message and data is None:
        message = response.text.strip()[:200]
    return f"HTTP {response.status_code}: {message or 'Request failed'}"


def classify_error(response: httpx.Response) -> ProviderError:
    """Map a non-2xx response to the matching ``ProviderError``."""
    status = response.status_code
    if status in (401, 403):
        return AuthError("Invalid API key")
    if status == 429:
        retry_after = response.headers.get("retry-after")
        try:
            secs = int(retry_after) if retry_after is not None else None
        except ValueError:
            secs = None
        return RateLimited(retry_after_secs=secs)
    return RequestFailed(error_message(response))


async def pump_events(
    events: AsyncIterator[StreamEvent], sink: EventChannel[StreamEvent]
) -> None:
    """Forward parser events into *sink*, stopping as soon as it is closed."""
    async with contextlib.aclosing(events) as stream:
        try:
            async for event in stream:
                await sink.send(event)
        except ChannelClosed:
            logger.debug("Stream consumer went away; abandoning response")


class Provider(ABC):
    """
    A provider encapsulates one upstream chat API.

    Adapters translate ``ChatRequest`` into the wire format, classify HTTP
    failures into ``ProviderError`` subclasses, and stream responses through
    a per-request ``StreamParser``.

    Parameters
    ----------
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the network.
    """

    def __init__(
        self,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def provider_id(self) -> ProviderId:
        ...

    @abstractmethod
    async def validate_credentials(
        self, api_key: str, base_url: str | None = None
    ) -> list[ModelInfo]:
        """Check the key and return the models it can use."""
        ...

    @abstractmethod
    async def send_message(self, request: ChatRequest) -> ChatResponse:
        """Run a single non-streaming completion."""
        ...

    async def stream_message(
        self, request: ChatRequest, sink: EventChannel[StreamEvent]
    ) -> None:
        """
        Stream a completion into *sink*.

        Failures before the body starts raise ``ProviderError``.  Once
        streaming, the events end with exactly one ``Done`` or
        ``StreamError``.
        """
        url, headers, body = self.build_stream_request(request)
        logger.info(
            "REQUEST: provider=%s model=%s tools=%d messages=%d",
            self.provider_id.value,
            request.model,
            len(request.tools),
            len(request.messages),
        )
        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", url, json=body, headers=headers
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise classify_error(response)
                    parser = self.new_parser()
                    await pump_events(parser.parse(response.aiter_bytes()), sink)
            except httpx.TransportError as exc:
                raise self.network_error(exc, request) from exc

    # ------------------------------------------------------------------
    # Hooks for adapters
    # ------------------------------------------------------------------

    @abstractmethod
    def build_stream_request(
        self, request: ChatRequest
    ) -> tuple[str, dict[str, str], dict]:
        """Return ``(url, headers, json_body)`` for a streaming call."""
        ...

    @abstractmethod
    def new_parser(self) -> StreamParser:
        """Create the parser for one streamed response."""
        ...

    def network_error(
        self, exc: httpx.TransportError, request: ChatRequest | None = None
    ) -> NetworkError:
        return NetworkError(str(exc) or exc.__class__.__name__)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: dict | None = None,
        request: ChatRequest | None = None,
    ) -> dict:
        async with self._client() as client:
            try:
                resp = await client.request(method, url, json=body, headers=headers)
            except httpx.TransportError as exc:
                raise self.network_error(exc, request) from exc

        if not resp.is_success:
            raise classify_error(resp)
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise InvalidResponse(f"Failed to parse response: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidResponse("Expected a JSON object in response")
        return data
