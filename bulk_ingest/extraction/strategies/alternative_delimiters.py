"""Semicolon, tab, pipe and other non-comma delimiters."""

from __future__ import annotations

import logging
from collections import Counter
from statistics import fmean
from typing import TYPE_CHECKING

from bulk_ingest.extraction.base import (
    PROBE_BYTES,
    ExtractionStrategy,
    ParsedTable,
    Row,
    StrategyRejectedError,
    build_table,
    clamp,
    confidence_bonus,
    detect_headers,
    empty_percentage,
    read_rows,
    sample_text,
)

if TYPE_CHECKING:
    from bulk_ingest.extraction.analysis import PreAnalysis

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = (";", "\t", "|", ":", "~", "#")
DELIMITER_BONUS = {";": 8, "\t": 7, "|": 6, ":": 4, "~": 2, "#": 1}

BASE_CONFIDENCE = 80
QUALITY_WEIGHT = 0.15
MIN_CONFIDENCE = 65
MAX_CONFIDENCE = 90
# Share of rows that must sit within tolerance of the average width.
CONSISTENCY_SHARE = 0.8
EMPTY_CELL_WARNING = 30


def _is_consistent(rows: list[Row]) -> bool:
    widths = [len(r) for r in rows]
    avg = fmean(widths)
    tolerance = max(1, round(avg * 0.1))
    within = sum(1 for w in widths if abs(w - avg) <= tolerance)
    return within / len(widths) >= CONSISTENCY_SHARE


class AlternativeDelimitersStrategy(ExtractionStrategy):
    name = "alternative-delimiters"
    priority = 90

    def is_candidate(self, analysis: PreAnalysis) -> bool:
        return len(analysis.plausible_delimiters) > 1

    def can_handle(self, buffer: bytes) -> bool:
        sample = sample_text(buffer, PROBE_BYTES)
        return any(d in sample for d in CANDIDATE_DELIMITERS)

    def parse(self, text: str) -> ParsedTable:
        sample = text[:2048]
        frequency = Counter({d: sample.count(d) for d in CANDIDATE_DELIMITERS})
        ordered = [d for d, count in frequency.most_common() if count > 0]

        best: tuple[float, int, ParsedTable] | None = None
        for delimiter in ordered:
            rows = read_rows(text, delimiter, skipinitialspace=True)
            if not rows or fmean(len(r) for r in rows) < 2:
                continue
            if not _is_consistent(rows):
                logger.debug("Delimiter %r gives inconsistent rows", delimiter)
                continue
            table = build_table(rows, delimiter, detect_headers(rows))
            key = (table.quality, frequency[delimiter], table)
            if best is None or key[:2] > best[:2]:
                best = key

        if best is None:
            raise StrategyRejectedError("No alternative delimiter produced consistent rows")
        table = best[2]
        table.issues.extend(self._issues(table, text))
        return table

    def _issues(self, table: ParsedTable, text: str) -> list[str]:
        issues = []
        if table.delimiter == ";" and "," in text:
            issues.append("Mixed delimiters: commas found alongside semicolons")
        if table.delimiter == "\t" and "  " in text:
            issues.append("Double spaces found alongside tab delimiters")
        if len({len(r) for r in table.rows}) > 3:
            issues.append("Highly variable row lengths")
        empty = empty_percentage(table.records)
        if empty > EMPTY_CELL_WARNING:
            issues.append(f"High percentage of empty fields ({empty:.0f}%)")
        return issues

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        confidence = BASE_CONFIDENCE + DELIMITER_BONUS.get(table.delimiter, 0)
        confidence += (table.quality - 50) * QUALITY_WEIGHT
        confidence += confidence_bonus(table.records)
        if parse_time_ms > 1000:
            confidence -= 3
        if parse_time_ms > 5000:
            confidence -= 7
        return clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
