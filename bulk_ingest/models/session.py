from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from bulk_ingest.exceptions import InvalidStatusTransitionError
from bulk_ingest.models.mapping import FieldMapping
from bulk_ingest.models.utils import generate_id, utcnow


class ImportSessionStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        ImportSessionStatus.COMPLETED,
        ImportSessionStatus.COMPLETED_WITH_ERRORS,
        ImportSessionStatus.FAILED,
        ImportSessionStatus.CANCELLED,
    }
)

_RANK = {
    ImportSessionStatus.PENDING: 0,
    ImportSessionStatus.PROCESSING: 1,
}


def _rank(status: ImportSessionStatus) -> int:
    return _RANK.get(status, 2)


@dataclass
class ImportSession:
    """One end-to-end import attempt for a single entity type."""

    entity_type: str
    status: str = ImportSessionStatus.PENDING.value
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    processing_rate: float = 0.0
    estimated_time_remaining: float | None = None
    field_mappings: list[FieldMapping] = field(default_factory=list)
    file_name: str | None = None
    error_message: str | None = None
    retry_of: str | None = None

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return ImportSessionStatus(self.status) in TERMINAL_STATUSES

    def can_transition_to(self, status: ImportSessionStatus | str) -> bool:
        current = ImportSessionStatus(self.status)
        if current in TERMINAL_STATUSES:
            return False
        return _rank(ImportSessionStatus(status)) > _rank(current)

    def transition(self, status: ImportSessionStatus | str) -> None:
        """Move to *status*, raising if that would go backwards."""
        target = ImportSessionStatus(status)
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError(self.id, self.status, target.value)
        self.status = target.value
        self.updated_at = utcnow()
        if target in TERMINAL_STATUSES:
            self.completed_at = self.updated_at
