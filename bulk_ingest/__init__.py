from bulk_ingest.config import BulkIngestConfig, parse_config
from bulk_ingest.exceptions import (
    BulkIngestError,
    ConnectionRejectedError,
    ExtractionFailedError,
    InvalidStatusTransitionError,
    MappingError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    StoreUnavailableError,
    UnsupportedFileKindError,
)
from bulk_ingest.extraction import AdaptiveExtractor, ExtractionResult, ExtractorConfig, FileKind
from bulk_ingest.facade import BulkIngest, FileAnalysis, ImportResult, SessionStatus
from bulk_ingest.inference import FieldInferenceEngine, InferenceConfig, StructureReport
from bulk_ingest.learning import LearningConfig, LearningStore
from bulk_ingest.loading import BatchLoader, LifecycleQueue, LoaderConfig
from bulk_ingest.models import (
    EntityType,
    FieldMapping,
    ImportSession,
    ImportSessionStatus,
)
from bulk_ingest.progress import ChannelConfig, ProgressChannel
from bulk_ingest.store import InMemoryStore, Store

__all__ = [
    "AdaptiveExtractor",
    "BatchLoader",
    "BulkIngest",
    "BulkIngestConfig",
    "BulkIngestError",
    "ChannelConfig",
    "ConnectionRejectedError",
    "EntityType",
    "ExtractionFailedError",
    "ExtractionResult",
    "ExtractorConfig",
    "FieldInferenceEngine",
    "FieldMapping",
    "FileAnalysis",
    "FileKind",
    "ImportResult",
    "ImportSession",
    "ImportSessionStatus",
    "InMemoryStore",
    "InferenceConfig",
    "InvalidStatusTransitionError",
    "LearningConfig",
    "LearningStore",
    "LifecycleQueue",
    "LoaderConfig",
    "MappingError",
    "ProgressChannel",
    "SessionAlreadyActiveError",
    "SessionNotFoundError",
    "SessionStatus",
    "Store",
    "StoreUnavailableError",
    "StructureReport",
    "UnsupportedFileKindError",
    "parse_config",
]
