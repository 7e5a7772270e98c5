"""
Provider Router -- dispatches requests to the adapter for a ProviderId.

The registry is filled at startup and read-only afterwards.  The router
adds no retries, fallback or balancing: every call goes to exactly one
provider and its errors propagate unchanged.
"""

from __future__ import annotations

import logging

from echochat.llm.channel import EventChannel
from echochat.llm.errors import UnknownProvider
from echochat.llm.providers.base import Provider
from echochat.llm.types import (
    ChatRequest,
    ChatResponse,
    ModelInfo,
    ProviderId,
    StreamEvent,
)

logger = logging.getLogger(__name__)


class ProviderRouter:
    """Maps ``ProviderId`` to ``Provider`` and forwards the three operations."""

    def __init__(self) -> None:
        self._providers: dict[ProviderId, Provider] = {}

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register(self, provider: Provider) -> None:
        """Register *provider* under its own id.  Overwrites any existing entry."""
        self._providers[provider.provider_id] = provider

    def get(self, provider_id: ProviderId) -> Provider:
        """
        Return the provider registered for *provider_id*.

        Raises ``UnknownProvider`` (a ``RequestFailed``) if none is registered.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            name = getattr(provider_id, "value", provider_id)
            raise UnknownProvider(f"Unknown provider: {name}")
        return provider

    @property
    def provider_ids(self) -> list[ProviderId]:
        return list(self._providers)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def validate_credentials(
        self,
        provider_id: ProviderId,
        api_key: str,
        base_url: str | None = None,
    ) -> list[ModelInfo]:
        return await self.get(provider_id).validate_credentials(api_key, base_url)

    async def send_message(
        self, provider_id: ProviderId, request: ChatRequest
    ) -> ChatResponse:
        return await self.get(provider_id).send_message(request)

    async def stream_message(
        self,
        provider_id: ProviderId,
        request: ChatRequest,
        sink: EventChannel[StreamEvent],
    ) -> None:
        provider = self.get(provider_id)
        logger.debug("Streaming via %s: %r", provider_id.value, request)
        await provider.stream_message(request, sink)


def default_router(timeout: float = 120.0) -> ProviderRouter:
    """Build a router with the three built-in adapters registered."""
    from echochat.llm.providers.claude import ClaudeProvider
    from echochat.llm.providers.gemini import GeminiProvider
    from echochat.llm.providers.local import LocalProvider

    router = ProviderRouter()
    for cls in (GeminiProvider, ClaudeProvider, LocalProvider):
        router.register(cls(timeout=timeout))
    return router
