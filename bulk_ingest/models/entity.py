from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bulk_ingest.models.utils import generate_id, utcnow


class EntityType(enum.StrEnum):
    PRODUCT = "product"
    BRAND = "brand"
    ATTRIBUTE = "attribute"


@dataclass
class EntityRecord:
    """A validated entity ready to be persisted."""

    entity_type: str
    data: dict[str, Any]
    session_id: str | None = None

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
