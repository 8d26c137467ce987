from bulk_ingest.learning.store import (
    FieldSuggestions,
    LearningConfig,
    LearningStatistics,
    LearningStore,
    Suggestion,
    normalize,
    similarity,
    variations,
)

__all__ = [
    "FieldSuggestions",
    "LearningConfig",
    "LearningStatistics",
    "LearningStore",
    "Suggestion",
    "normalize",
    "similarity",
    "variations",
]
