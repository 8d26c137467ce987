from bulk_ingest.extraction.strategies.alternative_delimiters import (
    AlternativeDelimitersStrategy,
)
from bulk_ingest.extraction.strategies.complex_fields import ComplexFieldsStrategy
from bulk_ingest.extraction.strategies.dirty_recovery import DirtyRecoveryStrategy
from bulk_ingest.extraction.strategies.numeric_headerless import (
    NumericHeaderlessStrategy,
)
from bulk_ingest.extraction.strategies.standard import StandardStrategy

__all__ = [
    "AlternativeDelimitersStrategy",
    "ComplexFieldsStrategy",
    "DirtyRecoveryStrategy",
    "NumericHeaderlessStrategy",
    "StandardStrategy",
]
