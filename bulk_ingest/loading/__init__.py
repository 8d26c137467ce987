from bulk_ingest.loading.events import (
    BatchCompletedEvent,
    BatchFailedEvent,
    CancelledEvent,
    CompletedEvent,
    ErrorEvent,
    LifecycleEvent,
    LifecycleQueue,
    ProgressEvent,
    parse_event,
)
from bulk_ingest.loading.loader import (
    BatchLoader,
    LoaderConfig,
    apply_mapping,
    check_mappings,
    partition,
)
from bulk_ingest.loading.metrics import SessionMetrics
from bulk_ingest.loading.validation import ValidationOutcome, slugify, validate

__all__ = [
    "BatchCompletedEvent",
    "BatchFailedEvent",
    "BatchLoader",
    "CancelledEvent",
    "CompletedEvent",
    "ErrorEvent",
    "LifecycleEvent",
    "LifecycleQueue",
    "LoaderConfig",
    "ProgressEvent",
    "SessionMetrics",
    "ValidationOutcome",
    "apply_mapping",
    "check_mappings",
    "parse_event",
    "partition",
    "slugify",
    "validate",
]
