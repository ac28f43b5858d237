"""Progress reporting and cancellation between harvesters and their caller."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import structlog

log = structlog.get_logger("repopulse.engine")

_DEFAULT_CAPACITY = 256


@dataclass(frozen=True)
class ProgressEvent:
    resource_kind: str
    items_so_far: int
    is_partial: bool = True
    is_rate_limited: bool = False
    seconds_until_resume: int | None = None


class ProgressChannel:
    """Bounded, non-blocking queue of :class:`ProgressEvent`.

    Producers never wait: when the queue is full the oldest event is dropped
    to make room.  A consumer drains with :meth:`drain` or ``async for``.
    """

    def __init__(self, capacity: int = _DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=capacity)
        self.dropped = 0

    def emit(self, event: ProgressEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def drain(self) -> list[ProgressEvent]:
        """Return every queued event without waiting."""
        events: list[ProgressEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def get(self) -> ProgressEvent:
        return await self._queue.get()

    def __len__(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            yield await self._queue.get()


class CancelToken:
    """Cooperative cancellation flag, checked between pages."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            log.info("harvester.cancel_requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
