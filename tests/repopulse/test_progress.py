"""Tests for the progress channel and cancel token."""

import asyncio

import pytest

from repopulse.engines.harvester.progress import CancelToken, ProgressChannel, ProgressEvent


def _event(n: int) -> ProgressEvent:
    return ProgressEvent(resource_kind="stars", items_so_far=n)


class TestProgressChannel:
    def test_emit_and_drain_in_order(self):
        channel = ProgressChannel()
        for n in range(3):
            channel.emit(_event(n))
        assert [e.items_so_far for e in channel.drain()] == [0, 1, 2]
        assert channel.drain() == []

    def test_full_channel_drops_oldest(self):
        channel = ProgressChannel(capacity=2)
        for n in range(5):
            channel.emit(_event(n))
        assert len(channel) == 2
        assert channel.dropped == 3
        assert [e.items_so_far for e in channel.drain()] == [3, 4]

    @pytest.mark.anyio
    async def test_async_iteration(self):
        channel = ProgressChannel()
        channel.emit(_event(1))
        channel.emit(_event(2))
        received = []
        async for event in channel:
            received.append(event.items_so_far)
            if len(received) == 2:
                break
        assert received == [1, 2]


class TestCancelToken:
    def test_initially_not_cancelled(self):
        assert CancelToken().cancelled is False

    def test_cancel_is_idempotent(self):
        token = CancelToken()
        token.cancel()
        token.cancel()
        assert token.cancelled is True

    @pytest.mark.anyio
    async def test_wait_returns_after_cancel(self):
        token = CancelToken()
        asyncio.get_running_loop().call_soon(token.cancel)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.cancelled
