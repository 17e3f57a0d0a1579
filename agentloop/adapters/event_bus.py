"""Async event bus fanning launcher and engine events into one queue.

Every launched process has its own reader task; all of them push into
a single EventBus so the ProcessRegistry consumes events one at a time.
Events of one process keep their order because each reader pushes
sequentially.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from agentloop.adapters.events import LoopEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging event producers to a single consumer."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[LoopEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._put_timeout = put_timeout

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback accepting plain event dicts."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return an async callback that parses dicts onto the bus."""
        return self._callback

    async def emit(self, event: LoopEvent) -> None:
        """Queue an event, applying backpressure when the queue is full."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(
                self._queue.put(event), timeout=self._put_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: LoopEvent) -> bool:
        """Queue an event without waiting; False if full or closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("EventBus full, dropping: %s", event.event_type)
            return False
        return True

    async def consume(self) -> AsyncIterator[LoopEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event
            self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been consumed."""
        await self._queue.join()

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._closed = False
