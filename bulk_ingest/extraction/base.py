"""Strategy interface and the parsing helpers every strategy shares."""

from __future__ import annotations

import codecs
import csv
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, ClassVar

from charset_normalizer import from_bytes

from bulk_ingest.extraction.types import ExtractionMetadata, ExtractionResult, Record

logger = logging.getLogger(__name__)

Row = list[str | None]

SAMPLE_BYTES = 2048
PROBE_BYTES = 1024

# Confidence bonus shared by all strategies.
BONUS_EMPTY_DATA = -50
BONUS_CONSISTENT_COLUMNS = 20
BONUS_VARIETY = 15
BONUS_VARIETY_ROWS = 10
BONUS_MIN = -30
BONUS_MAX = 50

_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_FIELD_STRIP_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


class StrategyRejectedError(ValueError):
    """A strategy looked at the input and decided it does not apply."""


def looks_numeric(value: str | None) -> bool:
    if value is None:
        return False
    return bool(_NUMERIC_RE.match(value.strip()))


def _utf16_order(sample: bytes) -> str | None:
    """Guess UTF-16 byte order from where NUL bytes sit in mostly-ASCII text."""
    if len(sample) < 4:
        return None
    even, odd = sample[0::2].count(0), sample[1::2].count(0)
    if odd > len(sample) // 4 and even == 0:
        return "utf-16-le"
    if even > len(sample) // 4 and odd == 0:
        return "utf-16-be"
    return None


def decode_buffer(buffer: bytes) -> tuple[str, str]:
    """Decode *buffer*, returning ``(text, encoding)``.

    Byte-order marks and clean UTF-8 are taken as is. Anything else,
    including NUL-laden text, goes through charset detection; latin-1
    is the last resort since it never fails.
    """
    if buffer.startswith(codecs.BOM_UTF8):
        return buffer[len(codecs.BOM_UTF8) :].decode("utf-8", errors="replace"), "utf-8-sig"
    if buffer.startswith(codecs.BOM_UTF16_LE):
        return buffer[2:].decode("utf-16-le", errors="replace"), "utf-16-le"
    if buffer.startswith(codecs.BOM_UTF16_BE):
        return buffer[2:].decode("utf-16-be", errors="replace"), "utf-16-be"
    if b"\x00" not in buffer:
        try:
            return buffer.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            pass
    else:
        order = _utf16_order(buffer[:PROBE_BYTES])
        if order is not None:
            usable = buffer[: len(buffer) - len(buffer) % 2]
            return usable.decode(order, errors="replace"), order

    best = from_bytes(buffer).best()
    if best is not None:
        logger.debug("Detected %s encoding", best.encoding)
        return str(best), best.encoding
    return buffer.decode("latin-1"), "latin-1"


def sample_text(buffer: bytes, size: int = SAMPLE_BYTES) -> str:
    text, _ = decode_buffer(buffer[:size])
    return text


def clean_cell(value: Any) -> str | None:
    """Trim a cell, strip one pair of surrounding quotes, map empty to ``None``."""
    if value is None:
        return None
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1].strip()
    return text or None


def sanitize_field_name(name: str | None) -> str:
    if not name:
        return ""
    cleaned = _FIELD_STRIP_RE.sub("", name.strip())
    return _WHITESPACE_RE.sub("_", cleaned.strip()).lower()


def positional_names(width: int, prefix: str = "column") -> list[str]:
    return [f"{prefix}_{i + 1}" for i in range(width)]


def header_names(row: Row) -> list[str]:
    """Sanitize a header row; blanks get positional names, repeats get suffixes."""
    names: list[str] = []
    seen: Counter[str] = Counter()
    for i, cell in enumerate(row):
        name = sanitize_field_name(cell) or f"column_{i + 1}"
        seen[name] += 1
        if seen[name] > 1:
            name = f"{name}_{seen[name]}"
        names.append(name)
    return names


def read_rows(
    text: str,
    delimiter: str,
    *,
    doublequote: bool = True,
    escapechar: str | None = None,
    skipinitialspace: bool = False,
) -> list[Row]:
    """Parse *text* with :mod:`csv`, cleaning cells and skipping blank lines.

    Rows may have differing lengths.
    """
    reader = csv.reader(
        io.StringIO(text, newline=""),
        delimiter=delimiter,
        quotechar='"',
        doublequote=doublequote,
        escapechar=escapechar,
        skipinitialspace=skipinitialspace,
    )
    rows: list[Row] = []
    for raw in reader:
        cells = [clean_cell(c) for c in raw]
        if any(c is not None for c in cells):
            rows.append(cells)
    return rows


def is_textual(cell: str | None) -> bool:
    return cell is not None and not looks_numeric(cell)


def detect_headers(rows: list[Row]) -> bool:
    """Best-effort header detection.

    The first row counts as headers when every cell is non-empty text and
    the second row contains at least one numeric cell. A text label over
    an all-numeric single column is indistinguishable from a header and
    is treated as one.
    """
    if len(rows) < 2 or not rows[0]:
        return False
    if not all(is_textual(cell) for cell in rows[0]):
        return False
    return any(looks_numeric(cell) for cell in rows[1])


def modal_width(rows: list[Row]) -> int:
    if not rows:
        return 0
    return Counter(len(r) for r in rows).most_common(1)[0][0]


def data_quality(rows: list[Row]) -> float:
    """Score 0-100: 50 plus up to 25 for row-width consistency and 25 for completeness."""
    if not rows:
        return 0.0
    width = modal_width(rows)
    consistency = sum(1 for r in rows if len(r) == width) / len(rows)
    total = sum(len(r) for r in rows)
    filled = sum(1 for r in rows for c in r if c is not None)
    completeness = filled / total if total else 0.0
    return 50 + consistency * 25 + completeness * 25


def empty_percentage(records: list[Record]) -> float:
    if not records or not records[0]:
        return 100.0
    total = len(records) * len(records[0])
    empty = sum(1 for r in records for v in r.values() if v is None or v == "")
    return empty / total * 100


def confidence_bonus(records: list[Record]) -> float:
    """Structure bonus in ``[-30, 50]`` shared by every strategy."""
    if not records:
        return BONUS_EMPTY_DATA
    keys = list(records[0])
    bonus = 0.0
    if all(len(r) == len(keys) for r in records):
        bonus += BONUS_CONSISTENT_COLUMNS
    head = records[:BONUS_VARIETY_ROWS]
    if any(len({r.get(k) for r in head if r.get(k) not in (None, "")}) > 1 for k in keys):
        bonus += BONUS_VARIETY
    empty = empty_percentage(records)
    if empty < 10:
        bonus += 15
    elif empty < 25:
        bonus += 10
    elif empty < 50:
        bonus += 5
    return max(BONUS_MIN, min(BONUS_MAX, bonus))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class ParsedTable:
    """Intermediate result of a strategy's parse, before scoring."""

    rows: list[Row]
    records: list[Record]
    delimiter: str
    has_headers: bool
    quality: float
    issues: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


def build_table(
    rows: list[Row],
    delimiter: str,
    has_headers: bool,
    *,
    names: list[str] | None = None,
) -> ParsedTable:
    """Turn parsed rows into field->value records.

    Cells beyond the header width are dropped; short rows are padded
    with ``None``.
    """
    if has_headers:
        names = header_names(rows[0])
        body = rows[1:]
    else:
        body = rows
        if names is None:
            names = positional_names(max((len(r) for r in rows), default=0))
    records = [
        {name: (row[i] if i < len(row) else None) for i, name in enumerate(names)}
        for row in body
    ]
    return ParsedTable(
        rows=body,
        records=records,
        delimiter=delimiter,
        has_headers=has_headers,
        quality=data_quality(body),
    )


class ExtractionStrategy(ABC):
    """One parsing heuristic for turning raw bytes into records.

    Subclasses set ``name`` and ``priority`` and implement
    :meth:`can_handle`, :meth:`parse` and :meth:`score`.
    :meth:`is_candidate` lets the extractor skip a strategy based on the
    pre-analysis of the buffer; :attr:`is_floor` marks the strategy that
    is always kept when the candidate list is capped.
    """

    name: ClassVar[str]
    priority: ClassVar[int]
    is_floor: ClassVar[bool] = False

    def is_candidate(self, analysis: Any) -> bool:
        return True

    @abstractmethod
    def can_handle(self, buffer: bytes) -> bool:
        """Cheap applicability probe over a prefix of *buffer*."""
        ...

    @abstractmethod
    def parse(self, text: str) -> ParsedTable:
        """Parse decoded text, raising :class:`StrategyRejectedError` if it does not fit."""
        ...

    @abstractmethod
    def score(self, table: ParsedTable, parse_time_ms: float) -> float: ...

    def execute(self, buffer: bytes, filename: str = "") -> ExtractionResult:
        started = time.perf_counter()
        text, encoding = decode_buffer(buffer)
        try:
            table = self.parse(text)
        except (csv.Error, ValueError) as exc:
            logger.debug("%s rejected %s: %s", self.name, filename or "<buffer>", exc)
            return ExtractionResult.failure(
                self.name,
                str(exc),
                encoding=encoding,
                parse_time_ms=_elapsed_ms(started),
            )
        parse_time_ms = _elapsed_ms(started)
        if not table.records:
            return ExtractionResult.failure(
                self.name,
                "No records parsed",
                encoding=encoding,
                parse_time_ms=parse_time_ms,
            )
        return ExtractionResult(
            success=True,
            data=table.records,
            confidence=self.score(table, parse_time_ms),
            strategy=self.name,
            metadata=ExtractionMetadata(
                delimiter=table.delimiter,
                has_headers=table.has_headers,
                encoding=encoding,
                parse_time_ms=parse_time_ms,
                quality_score=table.quality,
                issues=table.issues,
            ),
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, priority={self.priority})"


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
