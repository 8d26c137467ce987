from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from bulk_ingest.models.utils import generate_id


class ImportBatchStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ImportBatch:
    """A fixed-size contiguous slice ``[start_index, end_index)`` of a session's rows."""

    session_id: str
    batch_number: int
    start_index: int
    end_index: int
    status: str = ImportBatchStatus.PENDING.value
    success_count: int = 0
    failure_count: int = 0
    processing_time_ms: float | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    id: str = field(default_factory=generate_id)

    @property
    def record_count(self) -> int:
        return self.end_index - self.start_index
