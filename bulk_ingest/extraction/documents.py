"""Readers for structured documents: JSON arrays/objects and spreadsheets."""

from __future__ import annotations

import io
import json
import logging
import math
import time
import zipfile
from datetime import date, datetime
from pathlib import PurePath
from typing import Any

import pandas as pd

from bulk_ingest.extraction.base import (
    Row,
    build_table,
    clamp,
    clean_cell,
    confidence_bonus,
    data_quality,
    decode_buffer,
    detect_headers,
)
from bulk_ingest.extraction.types import ExtractionMetadata, ExtractionResult

logger = logging.getLogger(__name__)

JSON_CONSISTENT_CONFIDENCE = 95
JSON_RAGGED_CONFIDENCE = 85
SPREADSHEET_BASE_CONFIDENCE = 85
SPREADSHEET_MIN_CONFIDENCE = 60
SPREADSHEET_MAX_CONFIDENCE = 95

OLE_MAGIC = b"\xd0\xcf\x11\xe0"


def to_cell(value: Any) -> str | None:
    """Render a scalar or nested value as a raw cell string."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    return clean_cell(value)


def read_json(buffer: bytes, filename: str = "") -> ExtractionResult:
    started = time.perf_counter()
    text, encoding = decode_buffer(buffer)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        return ExtractionResult.failure("json", f"Invalid JSON: {exc.msg}", encoding=encoding)

    if isinstance(payload, dict):
        items = [payload]
    elif isinstance(payload, list):
        items = [item for item in payload if isinstance(item, dict)]
    else:
        items = []
    if not items:
        return ExtractionResult.failure("json", "No JSON objects found", encoding=encoding)

    columns: dict[str, None] = {}
    for item in items:
        columns.update(dict.fromkeys(item))
    records = [{col: to_cell(item.get(col)) for col in columns} for item in items]

    issues = []
    if isinstance(payload, list) and len(items) < len(payload):
        issues.append(f"Skipped {len(payload) - len(items)} non-object entries")
    ragged = any(set(item) != set(columns) for item in items)
    if ragged:
        issues.append("Objects have differing keys")

    rows: list[Row] = [list(r.values()) for r in records]
    logger.info("Read %d JSON objects from %s", len(records), filename or "<buffer>")
    return ExtractionResult(
        success=True,
        data=records,
        confidence=JSON_RAGGED_CONFIDENCE if ragged else JSON_CONSISTENT_CONFIDENCE,
        strategy="json",
        metadata=ExtractionMetadata(
            delimiter="",
            has_headers=True,
            encoding=encoding,
            parse_time_ms=(time.perf_counter() - started) * 1000,
            quality_score=data_quality(rows),
            issues=issues,
        ),
    )


def read_spreadsheet(buffer: bytes, filename: str = "") -> ExtractionResult:
    """Read the first sheet of an Excel workbook.

    Only OOXML workbooks are read; legacy OLE2 `.xls` files fail cleanly.
    """
    started = time.perf_counter()
    if buffer.startswith(OLE_MAGIC) or PurePath(filename).suffix.lower() == ".xls":
        return ExtractionResult.failure("spreadsheet", "Legacy .xls is not supported")
    try:
        frame = pd.read_excel(
            io.BytesIO(buffer), sheet_name=0, header=None, dtype=object, engine="openpyxl"
        )
    except (ValueError, OSError, KeyError, zipfile.BadZipFile) as exc:
        return ExtractionResult.failure("spreadsheet", f"Unreadable workbook: {exc}")

    rows: list[Row] = []
    for values in frame.itertuples(index=False, name=None):
        cells = [None if _is_missing(v) else to_cell(v) for v in values]
        if any(c is not None for c in cells):
            rows.append(cells)
    if not rows:
        return ExtractionResult.failure("spreadsheet", "Workbook has no data rows")

    table = build_table(rows, "", detect_headers(rows))
    confidence = SPREADSHEET_BASE_CONFIDENCE + (table.quality - 50) * 0.1
    confidence += confidence_bonus(table.records) * 0.2
    logger.info("Read %d spreadsheet rows from %s", len(table.records), filename or "<buffer>")
    return ExtractionResult(
        success=bool(table.records),
        data=table.records,
        confidence=clamp(confidence, SPREADSHEET_MIN_CONFIDENCE, SPREADSHEET_MAX_CONFIDENCE),
        strategy="spreadsheet",
        metadata=ExtractionMetadata(
            delimiter="",
            has_headers=table.has_headers,
            encoding="binary",
            parse_time_ms=(time.perf_counter() - started) * 1000,
            quality_score=table.quality,
            issues=table.issues,
        ),
        error=None if table.records else "Workbook has no data rows",
    )


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value)) or value is pd.NaT
