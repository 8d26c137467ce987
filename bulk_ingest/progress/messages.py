"""JSON wire messages pushed to progress-channel subscribers.

Keys are camelCase on the wire; every message carries a ``type``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bulk_ingest.loading.events import (
    BatchCompletedEvent,
    BatchFailedEvent,
    CancelledEvent,
    CompletedEvent,
    ErrorEvent,
    LifecycleEvent,
    ProgressEvent,
)
from bulk_ingest.models.utils import utcnow


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class WireMessage(_Wire):
    type: str
    timestamp: datetime = Field(default_factory=utcnow)


class SessionMessage(WireMessage):
    session_id: str


# ── Connection control ───────────────────────────────────────────────


class ConnectedMessage(SessionMessage):
    type: Literal["connected"] = "connected"


class PongMessage(WireMessage):
    type: Literal["pong"] = "pong"


class HeartbeatMessage(WireMessage):
    type: Literal["heartbeat"] = "heartbeat"
    connections: int


# ── Import lifecycle ─────────────────────────────────────────────────


class ProgressData(_Wire):
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    processing_rate: float
    estimated_time_remaining: float | None = None
    status: str = "processing"


class ProgressMessage(SessionMessage):
    type: Literal["progress"] = "progress"
    data: ProgressData


class BatchCompletedData(_Wire):
    batch_number: int
    success: bool
    success_count: int
    failure_count: int
    processing_time: float


class BatchCompletedMessage(SessionMessage):
    type: Literal["batch_completed"] = "batch_completed"
    data: BatchCompletedData


class CompletedData(_Wire):
    total_records: int
    successful_records: int
    failed_records: int
    processing_time: float
    status: str


class CompletedMessage(SessionMessage):
    """``type`` mirrors the terminal status: ``completed`` or ``completed_with_errors``."""

    type: Literal["completed", "completed_with_errors"] = "completed"
    data: CompletedData


class ErrorData(_Wire):
    error: str


class ErrorMessage(SessionMessage):
    type: Literal["error"] = "error"
    data: ErrorData


class CancelledMessage(SessionMessage):
    type: Literal["cancelled"] = "cancelled"


def to_wire(event: LifecycleEvent) -> SessionMessage:
    """Translate a loader lifecycle event into its subscriber-facing message."""
    match event:
        case ProgressEvent():
            return ProgressMessage(
                session_id=event.session_id,
                data=ProgressData(
                    total_records=event.total_records,
                    processed_records=event.processed_records,
                    successful_records=event.successful_records,
                    failed_records=event.failed_records,
                    processing_rate=event.processing_rate,
                    estimated_time_remaining=event.estimated_time_remaining,
                ),
            )
        case BatchCompletedEvent():
            return BatchCompletedMessage(
                session_id=event.session_id,
                data=BatchCompletedData(
                    batch_number=event.batch_number,
                    success=event.failure_count == 0,
                    success_count=event.success_count,
                    failure_count=event.failure_count,
                    processing_time=event.processing_time_ms,
                ),
            )
        case BatchFailedEvent():
            return ErrorMessage(
                session_id=event.session_id,
                data=ErrorData(error=f"Batch {event.batch_number} failed: {event.error}"),
            )
        case CompletedEvent():
            return CompletedMessage(
                type="completed_with_errors" if event.failed_records else "completed",
                session_id=event.session_id,
                data=CompletedData(
                    total_records=event.total_records,
                    successful_records=event.successful_records,
                    failed_records=event.failed_records,
                    processing_time=event.duration_ms,
                    status=event.status,
                ),
            )
        case ErrorEvent():
            return ErrorMessage(session_id=event.session_id, data=ErrorData(error=event.error))
        case CancelledEvent():
            return CancelledMessage(session_id=event.session_id)
        case _:
            raise ValueError(f"Unknown lifecycle event: {event!r}")
