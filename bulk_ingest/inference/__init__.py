from bulk_ingest.inference.engine import FieldInferenceEngine, InferenceConfig
from bulk_ingest.inference.probes import expand_abbreviations, normalize_field_name
from bulk_ingest.inference.types import (
    CommonValue,
    FieldDescriptor,
    FieldStatistics,
    FieldType,
    StructureReport,
)

__all__ = [
    "CommonValue",
    "FieldDescriptor",
    "FieldInferenceEngine",
    "FieldStatistics",
    "FieldType",
    "InferenceConfig",
    "StructureReport",
    "expand_abbreviations",
    "normalize_field_name",
]
