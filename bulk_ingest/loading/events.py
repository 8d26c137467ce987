"""Lifecycle events emitted by the batch loader.

The loader puts events on a :class:`LifecycleQueue`; the progress
channel (or a test) consumes them. Each event carries the session id and
a ``type`` discriminator.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from bulk_ingest.models.utils import utcnow


class _Event(BaseModel):
    session_id: str
    emitted_at: datetime = Field(default_factory=utcnow)


class ProgressEvent(_Event):
    type: Literal["progress"] = "progress"
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    processing_rate: float = 0.0
    estimated_time_remaining: float | None = None


class BatchCompletedEvent(_Event):
    type: Literal["batch_completed"] = "batch_completed"
    batch_number: int
    success_count: int
    failure_count: int
    processing_time_ms: float


class BatchFailedEvent(_Event):
    type: Literal["batch_failed"] = "batch_failed"
    batch_number: int
    error: str


class CompletedEvent(_Event):
    type: Literal["completed"] = "completed"
    status: str
    total_records: int
    successful_records: int
    failed_records: int
    duration_ms: float


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


class CancelledEvent(_Event):
    type: Literal["cancelled"] = "cancelled"


LifecycleEvent = Annotated[
    ProgressEvent
    | BatchCompletedEvent
    | BatchFailedEvent
    | CompletedEvent
    | ErrorEvent
    | CancelledEvent,
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[LifecycleEvent] = TypeAdapter(LifecycleEvent)


def parse_event(data: dict) -> LifecycleEvent:
    return _event_adapter.validate_python(data)


class LifecycleQueue:
    """Unbounded FIFO of lifecycle events with a close marker.

    ``async for event in queue`` drains events until :meth:`close` is
    called and every earlier event has been consumed.

    With ``needs_consumer`` set, producers should only put events while a
    consumer is attached (see :attr:`accepting`), so nothing piles up
    when no one is listening.
    """

    _CLOSED = object()

    def __init__(self, *, needs_consumer: bool = False) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._needs_consumer = needs_consumer
        self._consumers = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def accepting(self) -> bool:
        if self._closed:
            return False
        return self._consumers > 0 or not self._needs_consumer

    def attach(self) -> None:
        self._consumers += 1

    def detach(self) -> None:
        self._consumers = max(0, self._consumers - 1)

    def put(self, event: LifecycleEvent) -> None:
        if self._closed:
            raise RuntimeError("LifecycleQueue is closed")
        self._queue.put_nowait(event)

    async def get(self) -> LifecycleEvent | None:
        """Next event, or ``None`` once the queue is closed and drained."""
        item = await self._queue.get()
        if item is self._CLOSED:
            # Leave the marker for any other consumer.
            self._queue.put_nowait(item)
            return None
        return item

    def get_nowait(self) -> LifecycleEvent | None:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is self._CLOSED:
            self._queue.put_nowait(item)
            return None
        return item

    def drain(self) -> list[LifecycleEvent]:
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> LifecycleQueue:
        return self

    async def __anext__(self) -> LifecycleEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event
