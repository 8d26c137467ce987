from bulk_ingest.extraction.base import ExtractionStrategy
from bulk_ingest.extraction.extractor import AdaptiveExtractor, ExtractorConfig, sniff_kind
from bulk_ingest.extraction.registry import StrategyRegistry
from bulk_ingest.extraction.types import (
    ExtractionMetadata,
    ExtractionResult,
    FileKind,
    Record,
)

__all__ = [
    "AdaptiveExtractor",
    "ExtractionMetadata",
    "ExtractionResult",
    "ExtractionStrategy",
    "ExtractorConfig",
    "FileKind",
    "Record",
    "StrategyRegistry",
    "sniff_kind",
]
