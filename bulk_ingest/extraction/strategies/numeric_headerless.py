"""Headerless, mostly-numeric files (sensor dumps, exports without a header row)."""

from __future__ import annotations

import re
from collections import Counter
from typing import TYPE_CHECKING

from bulk_ingest.extraction.base import (
    ExtractionStrategy,
    ParsedTable,
    Row,
    StrategyRejectedError,
    build_table,
    clamp,
    confidence_bonus,
    looks_numeric,
    modal_width,
    read_rows,
    sample_text,
)

if TYPE_CHECKING:
    from bulk_ingest.extraction.analysis import PreAnalysis

CANDIDATE_DELIMITERS = (",", ";", "\t", "|", " ")
PROBE_LINES = 5
SCORE_LINES = 10

NUMERIC_LINE_SHARE = 0.6
FIRST_ROW_NUMERIC_SHARE = 0.5
MIN_NUMERIC_RATIO = 0.6
MIN_ROW_CONSISTENCY = 0.8

BASE_CONFIDENCE = 75
MIN_CONFIDENCE = 60
MAX_CONFIDENCE = 85

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?\d*\.\d+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _lines(text: str, limit: int | None = None) -> list[str]:
    return [line for line in text.splitlines() if line.strip()][:limit]


def _split(line: str, delimiter: str) -> list[str]:
    if delimiter == " ":
        return line.split()
    return [cell.strip() for cell in line.split(delimiter)]


def _numeric_share(cells: list[str]) -> float:
    if not cells:
        return 0.0
    return sum(1 for c in cells if looks_numeric(c) or _DATE_RE.match(c)) / len(cells)


def best_numeric_delimiter(lines: list[str]) -> str:
    """Pick the delimiter that yields the most numeric cells."""
    scores: Counter[str] = Counter()
    for delimiter in CANDIDATE_DELIMITERS:
        for line in lines:
            cells = _split(line, delimiter)
            if len(cells) > 1:
                scores[delimiter] += sum(1 for c in cells if looks_numeric(c))
    if not scores:
        return ","
    return scores.most_common(1)[0][0]


def _column_kind(values: list[str | None]) -> str:
    present = [v for v in values if v is not None]
    if not present:
        return "value"
    if all(_INTEGER_RE.match(v) for v in present):
        return "integer"
    if all(_DECIMAL_RE.match(v) or _INTEGER_RE.match(v) for v in present):
        return "decimal"
    if all(_DATE_RE.match(v) for v in present):
        return "date"
    if all(looks_numeric(v) for v in present):
        return "numeric"
    return "value"


class NumericHeaderlessStrategy(ExtractionStrategy):
    name = "numeric-headerless"
    priority = 70

    def is_candidate(self, analysis: PreAnalysis) -> bool:
        return analysis.looks_numeric

    def can_handle(self, buffer: bytes) -> bool:
        lines = _lines(sample_text(buffer), PROBE_LINES)
        if not lines:
            return False
        delimiter = best_numeric_delimiter(lines)
        numeric_lines = sum(
            1
            for line in lines
            if _numeric_share(_split(line, delimiter)) >= NUMERIC_LINE_SHARE
        )
        return numeric_lines >= min(2, len(lines))

    def parse(self, text: str) -> ParsedTable:
        delimiter = best_numeric_delimiter(_lines(text, SCORE_LINES))
        if delimiter == " ":
            rows: list[Row] = [list(line.split()) for line in _lines(text)]
        else:
            rows = read_rows(text, delimiter)

        if len(rows) < 2:
            raise StrategyRejectedError("Need at least two rows of data")
        if _numeric_share([c or "" for c in rows[0]]) < FIRST_ROW_NUMERIC_SHARE:
            raise StrategyRejectedError("First row appears to contain headers")

        cells = [c for row in rows for c in row if c is not None]
        ratio = _numeric_share(cells)
        if ratio < MIN_NUMERIC_RATIO:
            raise StrategyRejectedError(f"Numeric ratio too low ({ratio:.2f})")

        width = modal_width(rows)
        consistent = sum(1 for r in rows if abs(len(r) - width) <= 1) / len(rows)
        if consistent < MIN_ROW_CONSISTENCY:
            raise StrategyRejectedError("Row lengths are inconsistent")

        names = [
            f"{_column_kind([r[i] if i < len(r) else None for r in rows])}_{i + 1}"
            for i in range(max(len(r) for r in rows))
        ]
        table = build_table(rows, delimiter, False, names=names)
        table.extra["numeric_ratio"] = ratio
        table.issues.append("No header row detected; column names were generated")
        return table

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        ratio = table.extra.get("numeric_ratio", MIN_NUMERIC_RATIO)
        confidence = BASE_CONFIDENCE
        confidence += (ratio - MIN_NUMERIC_RATIO) * 50
        confidence += (table.quality - 50) * 0.1
        confidence += confidence_bonus(table.records) * 0.5
        if parse_time_ms < 1000:
            confidence += 3
        return clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
