"""Quoted cells with embedded delimiters, escaped quotes and line breaks."""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bulk_ingest.extraction.base import (
    SAMPLE_BYTES,
    ExtractionStrategy,
    ParsedTable,
    Row,
    StrategyRejectedError,
    build_table,
    clamp,
    clean_cell,
    confidence_bonus,
    detect_headers,
    read_rows,
    sample_text,
)

if TYPE_CHECKING:
    from bulk_ingest.extraction.analysis import PreAnalysis

logger = logging.getLogger(__name__)

EMBEDDABLE_DELIMITERS = (",", ";", "\t", "|")

BASE_CONFIDENCE = 80
QUALITY_WEIGHT = 0.15
MIN_CONFIDENCE = 60
MAX_CONFIDENCE = 90

_QUOTED_RE = re.compile(r'"[^"]*"')
_MULTILINE_RE = re.compile(r'"[^"]*\n[^"]*"')


@dataclass
class Complexity:
    delimiter: str = ","
    quoted_fields: bool = False
    embedded_delimiters: bool = False
    doubled_quotes: bool = False
    backslash_quotes: bool = False
    multiline: bool = False
    mixed_quoting: bool = False
    score: int = 0


def analyze_complexity(text: str) -> Complexity:
    c = Complexity()
    if _QUOTED_RE.search(text):
        c.quoted_fields = True
        c.score += 2
    for delimiter in EMBEDDABLE_DELIMITERS:
        if re.search(f'"[^"]*{re.escape(delimiter)}[^"]*"', text):
            c.embedded_delimiters = True
            c.delimiter = delimiter
            c.score += 3
            break
    else:
        counts = {d: text.count(d) for d in EMBEDDABLE_DELIMITERS}
        c.delimiter = max(counts, key=counts.__getitem__) if any(counts.values()) else ","
    if '""' in text:
        c.doubled_quotes = True
        c.score += 2
    if '\\"' in text:
        c.backslash_quotes = True
        c.score += 3
    if _MULTILINE_RE.search(text):
        c.multiline = True
        c.score += 4
    for line in text.splitlines()[:10]:
        if '"' not in line:
            continue
        cells = [cell.strip() for cell in line.split(c.delimiter)]
        quoted = [cell for cell in cells if cell.startswith('"') and cell.endswith('"')]
        if 0 < len(quoted) < len(cells):
            c.mixed_quoting = True
            c.score += 2
            break
    return c


def split_manually(text: str, delimiter: str) -> list[Row]:
    """Character-level scan tolerant of both ``""`` and ``\\"`` escapes."""
    rows: list[Row] = []
    row: list[str | None] = []
    cell: list[str] = []
    in_quotes = False
    i = 0
    while i < len(text):
        char = text[i]
        nxt = text[i + 1] if i + 1 < len(text) else ""
        if in_quotes:
            if char == "\\" and nxt == '"':
                cell.append('"')
                i += 1
            elif char == '"' and nxt == '"':
                cell.append('"')
                i += 1
            elif char == '"':
                in_quotes = False
            else:
                cell.append(char)
        elif char == '"':
            in_quotes = True
        elif char == delimiter:
            row.append(clean_cell("".join(cell)))
            cell = []
        elif char in "\r\n":
            if char == "\r" and nxt == "\n":
                i += 1
            row.append(clean_cell("".join(cell)))
            if any(v is not None for v in row):
                rows.append(row)
            row, cell = [], []
        else:
            cell.append(char)
        i += 1
    if cell or row:
        row.append(clean_cell("".join(cell)))
        if any(v is not None for v in row):
            rows.append(row)
    return rows


class ComplexFieldsStrategy(ExtractionStrategy):
    name = "complex-fields"
    priority = 60

    def is_candidate(self, analysis: PreAnalysis) -> bool:
        return analysis.has_quotes or analysis.has_escapes

    def can_handle(self, buffer: bytes) -> bool:
        sample = sample_text(buffer, SAMPLE_BYTES)
        return bool(_QUOTED_RE.search(sample)) or '\\"' in sample

    def parse(self, text: str) -> ParsedTable:
        complexity = analyze_complexity(text)
        delimiter = complexity.delimiter

        attempts = {
            "rfc4180": lambda: read_rows(text, delimiter),
            "backslash-escaped": lambda: read_rows(
                text, delimiter, doublequote=False, escapechar="\\"
            ),
            "manual": lambda: split_manually(text, delimiter),
        }
        best: ParsedTable | None = None
        for label, attempt in attempts.items():
            try:
                rows = attempt()
            except (csv.Error, ValueError) as exc:
                logger.debug("complex-fields %s parse failed: %s", label, exc)
                continue
            if not rows:
                continue
            table = build_table(rows, delimiter, detect_headers(rows))
            table.extra["variant"] = label
            if best is None or table.quality > best.quality:
                best = table

        if best is None:
            raise StrategyRejectedError("No complex-field parse produced rows")

        best.extra["complexity"] = complexity.score
        if complexity.embedded_delimiters:
            best.issues.append("Delimiters embedded inside quoted fields")
        if complexity.doubled_quotes or complexity.backslash_quotes:
            best.issues.append("Escaped quotes inside fields")
        if complexity.multiline:
            best.issues.append("Multi-line cell values")
        if complexity.mixed_quoting:
            best.issues.append("Mixed quoted and unquoted fields")
        return best

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        complexity = table.extra.get("complexity", 0)
        confidence = BASE_CONFIDENCE
        if complexity > 5:
            confidence += 5
        if complexity > 10:
            confidence += 5
        confidence += (table.quality - 50) * QUALITY_WEIGHT
        confidence += confidence_bonus(table.records)
        if parse_time_ms > 2000:
            confidence -= 5
        if parse_time_ms > 5000:
            confidence -= 10
        return clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
