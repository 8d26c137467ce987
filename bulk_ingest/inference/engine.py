from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from statistics import fmean
from typing import Any

from bulk_ingest.extraction.types import ExtractionResult, Record
from bulk_ingest.inference import probes
from bulk_ingest.inference.types import (
    CommonValue,
    FieldDescriptor,
    FieldStatistics,
    FieldType,
    StructureReport,
)

logger = logging.getLogger(__name__)

COMMON_VALUES = 5

# Names the extractor synthesizes for headerless input.
_GENERIC_NAME_RE = re.compile(r"^(column|integer|decimal|numeric|date|value)_\d+$")

_TYPE_PROBES: tuple[tuple[FieldType, Callable[[str], bool]], ...] = (
    (FieldType.NUMBER, probes.is_number),
    (FieldType.BOOLEAN, probes.is_boolean),
    (FieldType.DATE, probes.is_date),
    (FieldType.JSON, probes.is_json),
)


@dataclass
class InferenceConfig:
    max_sample_rows: int = 100
    type_threshold: float = 0.8
    sample_values: int = 5
    sample_rows: int = 5
    required_null_threshold: float = 10.0


def _present(value: Any) -> str | None:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text if text.strip() else None


class FieldInferenceEngine:
    """Describe the columns of an extracted dataset.

    Only the first ``max_sample_rows`` rows are inspected; every
    percentage in the report is relative to that sample.
    """

    def __init__(self, config: InferenceConfig | None = None) -> None:
        self._config = config or InferenceConfig()

    @property
    def config(self) -> InferenceConfig:
        return self._config

    def analyze_result(self, result: ExtractionResult) -> StructureReport:
        return self.analyze(result.data, result.columns)

    def analyze(
        self,
        records: Sequence[Record],
        columns: Sequence[str] | None = None,
    ) -> StructureReport:
        sample = list(records[: self._config.max_sample_rows])
        if columns is None:
            seen: dict[str, None] = {}
            for record in sample:
                seen.update(dict.fromkeys(record))
            columns = list(seen)

        fields = [
            self.describe_field(name, [record.get(name) for record in sample])
            for name in columns
        ]
        sample_data = [
            {f.name: record.get(f.name) for f in fields}
            for record in sample[: self._config.sample_rows]
        ]
        confidence = self.extraction_confidence(fields)
        logger.info(
            "Inferred %d fields from %d sampled rows (confidence %.2f)",
            len(fields),
            len(sample),
            confidence,
        )
        return StructureReport(
            fields=fields,
            sample_data=sample_data,
            total_rows=len(records),
            confidence=confidence,
        )

    def describe_field(self, name: str, values: Sequence[Any]) -> FieldDescriptor:
        total = len(values)
        present = [v for v in (_present(value) for value in values) if v is not None]
        unique = list(dict.fromkeys(present))

        null_percentage = (total - len(present)) / total * 100 if total else 100.0
        unique_percentage = len(unique) / len(present) * 100 if present else 0.0
        inferred = self.infer_type(present)
        samples = unique[: self._config.sample_values]

        return FieldDescriptor(
            name=name,
            inferred_type=inferred,
            semantic_type=self.semantic_type(name, samples),
            sample_values=samples,
            null_percentage=null_percentage,
            unique_percentage=unique_percentage,
            required=null_percentage < self._config.required_null_threshold,
            normalized_name=probes.normalize_field_name(name),
            expanded_name=probes.expand_abbreviations(name),
            patterns=probes.detect_patterns(samples),
            statistics=self._statistics(inferred, present),
        )

    def infer_type(self, values: Sequence[str]) -> FieldType:
        """First probe passing for ``type_threshold`` of the values wins."""
        if not values:
            return FieldType.STRING
        for field_type, probe in _TYPE_PROBES:
            passed = sum(1 for v in values if probe(v))
            if passed / len(values) >= self._config.type_threshold:
                return field_type
        return FieldType.STRING

    @staticmethod
    def semantic_type(name: str, samples: Sequence[str]) -> str | None:
        hint = probes.name_hint(name)
        if hint or not samples:
            return hint
        if all(probes.has_currency_symbol(v) for v in samples):
            return "currency"
        if all(v.strip().endswith("%") for v in samples):
            return "percentage"
        return probes.value_hint(samples[0].strip())

    def _statistics(self, inferred: FieldType, values: Sequence[str]) -> FieldStatistics:
        stats = FieldStatistics(
            common_values=[
                CommonValue(value=value, count=count)
                for value, count in Counter(values).most_common(COMMON_VALUES)
            ]
        )
        if not values:
            return stats
        if inferred is FieldType.NUMBER:
            numbers = [n for n in map(probes.parse_number, values) if n is not None]
            if numbers:
                stats.minimum = min(numbers)
                stats.maximum = max(numbers)
                stats.average = fmean(numbers)
        elif inferred is FieldType.STRING:
            lengths = [len(v) for v in values]
            stats.average_length = fmean(lengths)
            stats.min_length = min(lengths)
            stats.max_length = max(lengths)
        return stats

    @staticmethod
    def extraction_confidence(fields: Sequence[FieldDescriptor]) -> float:
        """0-1 score rewarding descriptive names and type variety, penalising nulls."""
        if not fields:
            return 0.0
        count = len(fields)
        well_named = sum(
            1 for f in fields if len(f.name) > 1 and not _GENERIC_NAME_RE.match(f.name)
        )
        distinct_types = len({f.inferred_type for f in fields})
        average_null = fmean(f.null_percentage for f in fields)

        confidence = 0.5
        confidence += well_named / count * 0.3
        confidence += distinct_types / max(count, 4) * 0.2
        confidence -= average_null / 100 * 0.2
        return max(0.0, min(1.0, confidence))
