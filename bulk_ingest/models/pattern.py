from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bulk_ingest.models.utils import generate_id, utcnow


@dataclass
class LearnedPattern:
    """A remembered ``normalized source name -> target field`` association.

    ``source_pattern`` is unique across the store.
    """

    source_pattern: str
    target_field: str
    confidence: float
    usage_count: int = 1
    success_rate: float = 0.0
    strategy: str = "manual"
    metadata: dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
