from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bulk_ingest.models.utils import generate_id, utcnow


class RecordStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ImportRecordLog:
    """Audit entry for one source row in one import attempt.

    ``record_data`` is the untouched source row, so a retry run can
    re-apply the session's mapping to it.
    """

    session_id: str
    record_index: int
    status: str
    entity_type: str
    record_data: dict[str, Any] = field(default_factory=dict)
    entity_id: str | None = None
    validation_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    auto_fixable: bool = False
    suggestion: str | None = None

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
