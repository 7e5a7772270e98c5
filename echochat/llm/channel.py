"""
Bounded event channel and cooperative cancellation token.

``EventChannel`` connects a producer (a provider stream, the agent loop) to
a consumer (the agent loop, the UI).  Sends suspend while the buffer is
full, and fail with ``ChannelClosed`` as soon as the consumer has gone away.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")

DEFAULT_CAPACITY = 64


class ChannelClosed(Exception):
    """The receiving side of an ``EventChannel`` has been closed."""


async def _first(*aws) -> set[asyncio.Future]:
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in tasks:
            if not t.done():
                t.cancel()
    return done


class EventChannel(Generic[T]):
    """
    Single-producer, single-consumer bounded channel.

    The producer calls ``send`` and finally ``finish``; the consumer calls
    ``recv`` until it returns ``None``, or ``close`` to stop early.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._closed = asyncio.Event()
        self._finished = asyncio.Event()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def send(self, item: T) -> None:
        if self._closed.is_set():
            raise ChannelClosed()
        try:
            self._queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._queue.put(item))
        done = await _first(put, self._closed.wait())
        if put not in done:
            raise ChannelClosed()

    def finish(self) -> None:
        """Signal that no more items will be sent."""
        self._finished.set()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def recv(self) -> T | None:
        """Return the next item, or ``None`` once the producer has finished."""
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._finished.is_set():
                return None
            get = asyncio.ensure_future(self._queue.get())
            done = await _first(get, self._finished.wait())
            if get in done:
                return get.result()

    def close(self) -> None:
        """Stop receiving.  Pending and future sends raise ``ChannelClosed``."""
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        """Return once the consumer has closed the channel."""
        await self._closed.wait()

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            item = await self.recv()
            if item is None:
                return
            yield item


class CancellationToken:
    """Shared flag that asks a running generation to stop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
