"""Tests for EventChannel and CancellationToken."""

from __future__ import annotations

import asyncio

import pytest

from echochat.llm.channel import CancellationToken, ChannelClosed, EventChannel


class TestEventChannel:
    async def test_send_then_recv_in_order(self):
        ch: EventChannel[int] = EventChannel()
        for i in range(3):
            await ch.send(i)
        ch.finish()
        assert [await ch.recv() for _ in range(4)] == [0, 1, 2, None]

    async def test_async_iteration_drains_after_finish(self):
        ch: EventChannel[str] = EventChannel()
        await ch.send("a")
        await ch.send("b")
        ch.finish()
        assert [x async for x in ch] == ["a", "b"]

    async def test_recv_waits_for_producer(self):
        ch: EventChannel[str] = EventChannel()

        async def produce():
            await asyncio.sleep(0.01)
            await ch.send("late")
            ch.finish()

        task = asyncio.create_task(produce())
        assert await ch.recv() == "late"
        assert await ch.recv() is None
        await task

    async def test_recv_returns_none_when_finished_while_waiting(self):
        ch: EventChannel[str] = EventChannel()
        waiter = asyncio.create_task(ch.recv())
        await asyncio.sleep(0)
        ch.finish()
        assert await asyncio.wait_for(waiter, 1) is None

    async def test_send_blocks_when_full(self):
        ch: EventChannel[int] = EventChannel(capacity=1)
        await ch.send(1)
        pending = asyncio.create_task(ch.send(2))
        await asyncio.sleep(0.01)
        assert not pending.done()

        assert await ch.recv() == 1
        await asyncio.wait_for(pending, 1)
        assert await ch.recv() == 2

    async def test_send_after_close_raises(self):
        ch: EventChannel[int] = EventChannel()
        ch.close()
        assert ch.closed
        with pytest.raises(ChannelClosed):
            await ch.send(1)

    async def test_blocked_send_fails_when_closed(self):
        ch: EventChannel[int] = EventChannel(capacity=1)
        await ch.send(1)
        pending = asyncio.create_task(ch.send(2))
        await asyncio.sleep(0.01)
        ch.close()
        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(pending, 1)

    async def test_wait_closed_returns_on_close(self):
        ch: EventChannel[int] = EventChannel()
        waiter = asyncio.create_task(ch.wait_closed())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        ch.close()
        await asyncio.wait_for(waiter, 1)


class TestCancellationToken:
    def test_initially_not_cancelled(self):
        assert CancellationToken().is_cancelled is False

    def test_cancel_is_sticky(self):
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.is_cancelled

    async def test_wait_returns_after_cancel(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, 1)
