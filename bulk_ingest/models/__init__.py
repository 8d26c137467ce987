"""Domain models: plain dataclasses with no infrastructure dependencies.

These are the canonical types passed through the Store interface and
every component. The SQLAlchemy ORM rows used by ``SqlStore`` live in
``bulk_ingest.store.orm`` and map to/from these.
"""

from bulk_ingest.models.batch import ImportBatch, ImportBatchStatus
from bulk_ingest.models.entity import EntityRecord, EntityType
from bulk_ingest.models.mapping import FieldMapping
from bulk_ingest.models.pattern import LearnedPattern
from bulk_ingest.models.record_log import ImportRecordLog, RecordStatus
from bulk_ingest.models.session import (
    TERMINAL_STATUSES,
    ImportSession,
    ImportSessionStatus,
)

__all__ = [
    "EntityRecord",
    "EntityType",
    "FieldMapping",
    "ImportBatch",
    "ImportBatchStatus",
    "ImportRecordLog",
    "ImportSession",
    "ImportSessionStatus",
    "LearnedPattern",
    "RecordStatus",
    "TERMINAL_STATUSES",
]
