"""Last-resort rescue of damaged files: stray bytes, ragged rows, lost delimiters."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from statistics import fmean, pvariance

from bulk_ingest.extraction.base import (
    PROBE_BYTES,
    ExtractionStrategy,
    ParsedTable,
    Row,
    StrategyRejectedError,
    build_table,
    clamp,
    clean_cell,
    confidence_bonus,
    detect_headers,
    sample_text,
)

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = (",", ";", "\t", "|", ":", " ")
ROW_SIZE_GUESSES = (3, 4, 5, 6, 8, 10, 12)

BASE_CONFIDENCE = 40
MIN_CONFIDENCE = 20
MAX_CONFIDENCE = 70

METHOD_PENALTY = {
    "basic-cleanup": 0,
    "aggressive-cleanup": -10,
    "line-by-line": -20,
    "desperate": -30,
}

_BINARY_RE = re.compile(r"[\x00-\x08\x0e-\x1f\x7f]")
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7e\t\n\r]")
_SPLIT_ANY_RE = re.compile(r"[,;\t|]")


@dataclass
class Damage:
    delimiter: str = ","
    null_bytes: bool = False
    binary_data: bool = False
    mixed_line_endings: bool = False
    missing_delimiters: bool = False
    trailing_spaces: bool = False
    garbage: bool = False
    score: int = 0
    issues: list[str] = field(default_factory=list)

    def flag(self, attr: str, weight: int, issue: str) -> None:
        setattr(self, attr, True)
        self.score += weight
        self.issues.append(issue)


def detect_delimiter_from_mess(text: str) -> str:
    """Choose the delimiter whose per-line count is high and steady."""
    lines = [line for line in text.split("\n")[:20] if line.strip()]
    best, best_score = ",", 0.0
    for delimiter in CANDIDATE_DELIMITERS:
        if not lines:
            break
        if delimiter == " ":
            counts = [len(re.findall(r"\s+", line.strip())) for line in lines]
        else:
            counts = [line.count(delimiter) for line in lines]
        score = fmean(counts) * 10 - pvariance(counts)
        if score > best_score:
            best, best_score = delimiter, score
    return best


def analyze_damage(text: str) -> Damage:
    damage = Damage()
    if "\0" in text:
        damage.flag("null_bytes", 3, "Contains null bytes")
    if _BINARY_RE.search(text):
        damage.flag("binary_data", 2, "Contains binary data")
    crlf = "\r\n" in text
    bare_lf = "\n" in text.replace("\r\n", "")
    bare_cr = "\r" in text.replace("\r\n", "")
    if sum((crlf, bare_lf, bare_cr)) > 1:
        damage.flag("mixed_line_endings", 1, "Inconsistent line endings")

    damage.delimiter = detect_delimiter_from_mess(text)
    lines = re.split(r"\r?\n", text)[:10]
    missing = sum(1 for line in lines if line.strip() and damage.delimiter not in line)
    if missing > len(lines) * 0.3:
        damage.flag("missing_delimiters", 2, "Many lines missing delimiters")
    trailing = sum(1 for line in lines if line != line.rstrip())
    if trailing > len(lines) * 0.5:
        damage.flag("trailing_spaces", 1, "Excessive trailing whitespace")
    if "\ufffd" in text or _NON_PRINTABLE_RE.search(text):
        damage.flag("garbage", 2, "Contains garbage characters")
    return damage


def split_line(line: str, delimiter: str) -> Row:
    """Split one line, honouring double quotes but nothing else."""
    cells: Row = []
    current: list[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            cells.append(clean_cell("".join(current)))
            current = []
        else:
            current.append(char)
    tail = "".join(current)
    if tail.strip() or cells:
        cells.append(clean_cell(tail))
    return cells


def _guess_kind(value: str) -> str:
    value = value.strip()
    if not value:
        return "empty"
    if re.fullmatch(r"\d+", value):
        return "integer"
    if re.fullmatch(r"\d+\.\d+", value):
        return "decimal"
    if re.match(r"\d{4}-\d{2}-\d{2}", value):
        return "date"
    if len(value) < 3:
        return "short"
    return "text"


def estimate_row_size(fields: list[str]) -> int:
    """Guess how many cells a row had by how uniform each resulting column looks."""
    best_size, best_score = 4, 0
    for size in ROW_SIZE_GUESSES:
        if len(fields) < size * 2:
            continue
        score = 0
        for col in range(size):
            kinds = {_guess_kind(v) for v in fields[col::size]}
            if len(kinds) == 1:
                score += 3
            elif len(kinds) <= 2:
                score += 1
        if score > best_score:
            best_size, best_score = size, score
    return best_size


class DirtyRecoveryStrategy(ExtractionStrategy):
    name = "dirty-recovery"
    priority = 10
    is_floor = True

    def can_handle(self, buffer: bytes) -> bool:
        return bool(sample_text(buffer, PROBE_BYTES).strip())

    def parse(self, text: str) -> ParsedTable:
        damage = analyze_damage(text)
        steps: list[tuple[str, Callable[[], list[Row]]]] = [
            ("basic-cleanup", lambda: self._basic_cleanup(text, damage)),
            ("aggressive-cleanup", lambda: self._aggressive_cleanup(text, damage)),
            ("line-by-line", lambda: self._line_by_line(text, damage)),
            ("desperate", lambda: self._desperate(text)),
        ]
        for method, step in steps:
            rows = [r for r in step() if r]
            if not rows:
                continue
            has_headers = method != "desperate" and detect_headers(rows)
            delimiter = "," if method == "desperate" else damage.delimiter
            table = build_table(rows, delimiter, has_headers)
            if not table.records:
                continue
            table.extra["method"] = method
            table.extra["damage"] = damage.score
            table.extra["recovery"] = self._recovery_score(table, method, damage)
            table.issues.extend(damage.issues)
            table.issues.append(f"Recovered using {method}")
            logger.info("dirty-recovery succeeded with %s (%d rows)", method, len(rows))
            return table
        raise StrategyRejectedError("Unable to recover any rows")

    # ── Recovery steps ───────────────────────────────────────────────

    def _basic_cleanup(self, text: str, damage: Damage) -> list[Row]:
        cleaned = text.replace("\0", "")
        cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
        return [
            split_line(line.rstrip(), damage.delimiter)
            for line in cleaned.split("\n")
            if line.strip()
        ]

    def _aggressive_cleanup(self, text: str, damage: Damage) -> list[Row]:
        cleaned = _NON_PRINTABLE_RE.sub("", text.replace("\r\n", "\n"))
        if damage.delimiter != " ":
            repeated = re.compile(f"{re.escape(damage.delimiter)}{{2,}}")
            cleaned = repeated.sub(damage.delimiter, cleaned)
        return [
            split_line(line, damage.delimiter)
            for line in cleaned.split("\n")
            if line.strip()
        ]

    def _line_by_line(self, text: str, damage: Damage) -> list[Row]:
        rows = []
        for line in re.split(r"\r?\n", text):
            line = re.sub(r"\s+", " ", _NON_PRINTABLE_RE.sub(" ", line)).strip()
            if not line:
                continue
            if damage.delimiter not in line and damage.delimiter != " ":
                line = line.replace(" ", damage.delimiter)
            rows.append(split_line(line, damage.delimiter))
        return rows

    def _desperate(self, text: str) -> list[Row]:
        fields = [f.strip() for f in _SPLIT_ANY_RE.split(text.replace("\n", ",")) if f.strip()]
        if not fields:
            return []
        size = estimate_row_size(fields)
        return [
            [clean_cell(v) for v in fields[i : i + size]]
            for i in range(0, len(fields), size)
        ]

    # ── Scoring ──────────────────────────────────────────────────────

    def _recovery_score(self, table: ParsedTable, method: str, damage: Damage) -> float:
        score = 50.0 + METHOD_PENALTY[method]
        rows = table.rows
        if rows:
            width = len(table.records[0]) if table.records else 0
            score += sum(1 for r in rows if len(r) == width) / len(rows) * 20
            total = len(table.records) * width
            filled = sum(1 for r in table.records for v in r.values() if v is not None)
            score += (filled / total if total else 0) * 15
        return score - damage.score * 5

    def score(self, table: ParsedTable, parse_time_ms: float) -> float:
        confidence = BASE_CONFIDENCE
        confidence += (table.extra.get("recovery", 50) - 50) * 0.4
        confidence -= min(20, table.extra.get("damage", 0) * 3)
        confidence += confidence_bonus(table.records) * 0.3
        if parse_time_ms < 1000:
            confidence += 2
        return clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
