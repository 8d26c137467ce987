"""RFC 4180 comma-separated parsing with relaxed column counts."""

from __future__ import annotations

from bulk_ingest.extraction.base import (
    PROBE_BYTES,
    ExtractionStrategy,
    ParsedTable,
    StrategyRejectedError,
    build_table,
    clamp,
    confidence_bonus,
    detect_headers,
    empty_percentage,
    read_rows,
    sample_text,
)

BASE_CONFIDENCE = 85
QUALITY_WEIGHT = 0.2
MIN_CONFIDENCE = 70
MAX_CONFIDENCE = 95
EMPTY_CELL_WARNING = 25


class StandardStrategy(ExtractionStrategy):
    name = "standard"
    priority = 100

    def can_handle(self, buffer: bytes) -> bool:
        sample = sample_text(buffer, PROBE_BYTES)
        commas = sample.count(",")
        return commas > 0 and commas >= sample.count(";") and commas >= sample.count("\t")

    def parse(self, text: str) -> ParsedTable:
        rows = read_rows(text, ",")
        if not rows:
            raise StrategyRejectedError("No rows found")
        table = build_table(rows, ",", detect_headers(rows))

        widths = [len(r) for r in rows]
        if max(widths) - min(widths) > 1:
            table.issues.append("Inconsistent column count across rows")
        if '"' in text:
            table.issues.append("Contains quoted fields")
        empty = empty_percentage(table.records)
        if empty > EMPTY_CELL_WARNING:
            table.issues.append(f"High percentage of empty cells ({empty:.0f}%)")
        return table

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        confidence = BASE_CONFIDENCE
        confidence += (table.quality - 50) * QUALITY_WEIGHT
        confidence += confidence_bonus(table.records)
        if parse_time_ms > 1000:
            confidence -= 5
        if parse_time_ms > 5000:
            confidence -= 10
        return clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
