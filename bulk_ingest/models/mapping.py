from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldMapping:
    """A confirmed ``source_field -> target_field`` association.

    ``confidence`` (0-100) and ``strategy`` record how the mapping was
    chosen; the learning store folds both into its statistics.
    """

    source_field: str
    target_field: str
    confidence: float = 100.0
    strategy: str = "manual"

    def to_dict(self) -> dict:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "confidence": self.confidence,
            "strategy": self.strategy,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FieldMapping:
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            confidence=float(data.get("confidence", 100.0)),
            strategy=data.get("strategy", "manual"),
        )
