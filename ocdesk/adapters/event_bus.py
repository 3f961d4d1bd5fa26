"""Async event bus bridging supervisor streams to the desk consumer.

Each supervisor runs its stream in its own task and emits typed events
here. The desk client drains the bus in a single consumer loop, so the
router and reconciler only ever run on one task.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ocdesk.adapters.events import ServerEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue between supervisors and the desk consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[ServerEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: ServerEvent) -> None:
        """Queue an event, applying backpressure when the consumer lags."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[ServerEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def drain_nowait(self) -> list[ServerEvent]:
        """Pop everything currently queued without waiting."""
        events: list[ServerEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drop leftover events and re-open the bus."""
        self.drain_nowait()
        self._closed = False
