"""Cheap pre-analysis of a buffer prefix, used to pick candidate strategies."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

from bulk_ingest.extraction.base import SAMPLE_BYTES, sample_text

ANALYSIS_LINES = 10
DETECTABLE_DELIMITERS = (",", ";", "\t", "|", ":")

_LETTERS_RE = re.compile(r"[A-Za-z]")
_LEADING_NUMBER_RE = re.compile(r"^\d+[,;\t|]")
_NUMBER_RE = re.compile(r"\d+\.?\d*")
_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}")
_QUOTED_RE = re.compile(r'"[^"]*"')


@dataclass
class PreAnalysis:
    delimiters: list[str] = field(default_factory=list)
    has_quotes: bool = False
    has_escapes: bool = False
    line_ending: str = "lf"
    estimated_columns: int = 0
    has_text_headers: bool = False
    has_numeric_data: bool = False
    has_date_data: bool = False
    has_quoted_fields: bool = False
    has_empty_fields: bool = False

    @property
    def primary_delimiter(self) -> str:
        return self.delimiters[0] if self.delimiters else ","

    @property
    def plausible_delimiters(self) -> set[str]:
        """Detected delimiters plus the comma every CSV is assumed to use."""
        return set(self.delimiters) | {","}

    @property
    def looks_numeric(self) -> bool:
        return self.has_numeric_data and not self.has_text_headers


def _line_ending(sample: str) -> str:
    if "\r\n" in sample:
        return "crlf"
    if "\r" in sample:
        return "cr"
    return "lf"


def analyze(buffer: bytes) -> PreAnalysis:
    sample = sample_text(buffer, SAMPLE_BYTES)
    lines = [line for line in re.split(r"\r\n|\r|\n", sample) if line.strip()]
    lines = lines[:ANALYSIS_LINES]

    counts = Counter({d: sample.count(d) for d in DETECTABLE_DELIMITERS})
    delimiters = [d for d, count in counts.most_common() if count > 0]

    estimated_columns = 0
    if delimiters and lines:
        per_line = Counter(line.count(delimiters[0]) for line in lines)
        estimated_columns = per_line.most_common(1)[0][0] + 1

    first = lines[0] if lines else ""
    primary = delimiters[0] if delimiters else ","
    doubled = primary * 2

    return PreAnalysis(
        delimiters=delimiters,
        has_quotes='"' in sample or "'" in sample,
        has_escapes="\\" in sample,
        line_ending=_line_ending(sample),
        estimated_columns=estimated_columns,
        has_text_headers=bool(_LETTERS_RE.search(first))
        and not _LEADING_NUMBER_RE.match(first),
        has_numeric_data=any(_NUMBER_RE.search(line) for line in lines),
        has_date_data=any(_DATE_RE.search(line) for line in lines),
        has_quoted_fields=bool(_QUOTED_RE.search(sample)),
        has_empty_fields=any(
            doubled in line or line.startswith(primary) or line.endswith(primary)
            for line in lines
        ),
    )
