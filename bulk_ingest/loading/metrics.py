from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from bulk_ingest.loading.events import ProgressEvent
from bulk_ingest.models.utils import utcnow


@dataclass
class SessionMetrics:
    """Live counters for one in-flight session.

    Shared by every batch task of the session; the loader mutates it
    from the event loop only, so no locking is needed.
    """

    session_id: str
    total_records: int
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    started_at: datetime = field(default_factory=utcnow)
    _clock_start: float = field(default_factory=time.monotonic, repr=False)

    def record(self, success: bool) -> None:
        self.processed_records += 1
        if success:
            self.successful_records += 1
        else:
            self.failed_records += 1

    def record_failures(self, count: int) -> None:
        self.processed_records += count
        self.failed_records += count

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._clock_start

    @property
    def throughput(self) -> float:
        """Records per second since the session started."""
        elapsed = self.elapsed_seconds
        return self.processed_records / elapsed if elapsed > 0 else 0.0

    @property
    def average_latency_ms(self) -> float:
        if not self.processed_records:
            return 0.0
        return self.elapsed_seconds * 1000 / self.processed_records

    @property
    def estimated_time_remaining(self) -> float | None:
        rate = self.throughput
        if rate <= 0:
            return None
        return max(self.total_records - self.processed_records, 0) / rate

    def progress_event(self) -> ProgressEvent:
        return ProgressEvent(
            session_id=self.session_id,
            total_records=self.total_records,
            processed_records=self.processed_records,
            successful_records=self.successful_records,
            failed_records=self.failed_records,
            processing_rate=round(self.throughput, 2),
            estimated_time_remaining=self.estimated_time_remaining,
        )
