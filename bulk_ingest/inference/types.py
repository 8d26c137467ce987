from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class FieldType(enum.StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"


@dataclass
class CommonValue:
    value: str
    count: int


@dataclass
class FieldStatistics:
    minimum: float | None = None
    maximum: float | None = None
    average: float | None = None
    average_length: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    common_values: list[CommonValue] = field(default_factory=list)


@dataclass
class FieldDescriptor:
    """Inferred structure of one source column."""

    name: str
    inferred_type: FieldType
    semantic_type: str | None
    sample_values: list[str]
    null_percentage: float
    unique_percentage: float
    required: bool
    normalized_name: str
    expanded_name: str
    patterns: list[str] = field(default_factory=list)
    statistics: FieldStatistics = field(default_factory=FieldStatistics)

    @property
    def type_label(self) -> str:
        """``number/currency`` style label combining both type layers."""
        if self.semantic_type:
            return f"{self.inferred_type}/{self.semantic_type}"
        return str(self.inferred_type)


@dataclass
class StructureReport:
    fields: list[FieldDescriptor]
    sample_data: list[dict[str, Any]]
    total_rows: int
    confidence: float

    def get_field(self, name: str) -> FieldDescriptor:
        for descriptor in self.fields:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)
