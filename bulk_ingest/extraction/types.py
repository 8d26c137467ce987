"""Value types shared by every extraction strategy."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

Record = dict[str, Any]


class FileKind(enum.StrEnum):
    CSV = "csv"
    JSON = "json"
    SPREADSHEET = "spreadsheet"


@dataclass
class ExtractionMetadata:
    delimiter: str = ","
    has_headers: bool = False
    total_records: int = 0
    encoding: str = "utf-8"
    parse_time_ms: float = 0.0
    quality_score: float = 0.0
    issues: list[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """Outcome of one strategy run over one buffer.

    ``confidence`` is clamped to ``[0, 100]`` and a failed result never
    carries data.
    """

    success: bool
    data: list[Record]
    confidence: float
    strategy: str
    metadata: ExtractionMetadata = field(default_factory=ExtractionMetadata)
    error: str | None = None
    min_confidence: float = 70.0

    def __post_init__(self) -> None:
        self.confidence = max(0.0, min(100.0, float(self.confidence)))
        if not self.success:
            self.data = []
        self.metadata.total_records = len(self.data)

    @classmethod
    def failure(
        cls,
        strategy: str,
        error: str,
        *,
        encoding: str = "utf-8",
        parse_time_ms: float = 0.0,
    ) -> ExtractionResult:
        return cls(
            success=False,
            data=[],
            confidence=0.0,
            strategy=strategy,
            metadata=ExtractionMetadata(encoding=encoding, parse_time_ms=parse_time_ms),
            error=error,
        )

    @property
    def columns(self) -> list[str]:
        if not self.data:
            return []
        return list(self.data[0])

    @property
    def needs_review(self) -> bool:
        """A usable result that did not clear the confidence floor."""
        return self.success and self.confidence < self.min_confidence
