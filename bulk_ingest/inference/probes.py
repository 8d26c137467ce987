"""Value and name probes used by field inference.

Also imported by the loader's validation rules, which need the same
lenient number and date parsing.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime

CURRENCY_SYMBOLS = "$€£¥"
BOOLEAN_TOKENS = frozenset(
    {"true", "false", "yes", "no", "1", "0", "on", "off", "enabled", "disabled"}
)
MIN_DATE_LENGTH = 8

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%d %b %Y",
    "%B %d %Y",
    "%B %d, %Y",
    "%d %B %Y",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
)

# Substring hints on the column name, checked in order.
NAME_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("price", "cost", "amount"), "currency"),
    (("percent", "rate"), "percentage"),
    (("weight", "height", "width"), "measurement"),
    (("email", "mail"), "email"),
    (("phone", "tel"), "phone"),
    (("url", "link", "website"), "url"),
    (("image", "img", "photo"), "image_url"),
)

VALUE_HINTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^\d{3}-\d{2}-\d{4}$"), "ssn"),
    (re.compile(r"^[A-Z]{2}\d{4,10}$"), "sku"),
    (re.compile(r"^\d{12,13}$"), "barcode"),
    (re.compile(r"^#[0-9A-Fa-f]{6}$"), "color_hex"),
    (re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$"), "email"),
    (re.compile(r"^https?://", re.IGNORECASE), "url"),
)

VALUE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("integer_only", re.compile(r"^\d+$")),
    ("decimal_two_places", re.compile(r"^\d+\.\d{2}$")),
    ("currency_usd", re.compile(r"^\$[\d,]+\.\d{2}$")),
    ("date_iso", re.compile(r"^\d{4}-\d{2}-\d{2}$")),
    ("code_alphanum", re.compile(r"^[A-Z0-9]{6,12}$")),
)

ABBREVIATIONS = {
    "qty": "quantity",
    "desc": "description",
    "amt": "amount",
    "num": "number",
    "id": "identifier",
    "img": "image",
    "url": "web_address",
    "addr": "address",
    "tel": "telephone",
    "fax": "facsimile",
    "prod": "product",
    "mfg": "manufacturer",
    "cat": "category",
    "std": "standard",
    "wt": "weight",
    "ht": "height",
    "wd": "width",
    "len": "length",
    "vol": "volume",
    "temp": "temperature",
    "min": "minimum",
    "max": "maximum",
    "avg": "average",
    "pct": "percentage",
    "req": "required",
    "opt": "optional",
    "def": "default",
}

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_NUMBER_NOISE_RE = re.compile(f"[{re.escape(CURRENCY_SYMBOLS)},%\\s]")
_SEPARATORS_RE = re.compile(r"[_\-\s]+")


# ── Value probes ─────────────────────────────────────────────────────


def parse_number(value: str | float | int | None) -> float | None:
    """Parse ``"$1,299.00"``, ``"-5"``, ``"12%"`` and friends; ``None`` otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    cleaned = _NUMBER_NOISE_RE.sub("", value)
    if not _NUMBER_RE.match(cleaned):
        return None
    return float(cleaned)


def is_number(value: str) -> bool:
    return parse_number(value) is not None


def is_boolean(value: str) -> bool:
    return value.strip().lower() in BOOLEAN_TOKENS


def parse_date(value: str) -> date | None:
    text = value.strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def is_date(value: str) -> bool:
    return len(value.strip()) >= MIN_DATE_LENGTH and parse_date(value) is not None


def is_json(value: str) -> bool:
    text = value.strip()
    if not text.startswith(("{", "[")):
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def has_currency_symbol(value: str) -> bool:
    return any(symbol in value for symbol in CURRENCY_SYMBOLS)


# ── Name probes ──────────────────────────────────────────────────────


def name_hint(name: str) -> str | None:
    lowered = name.lower()
    for fragments, hint in NAME_HINTS:
        if any(fragment in lowered for fragment in fragments):
            return hint
    return None


def value_hint(sample: str) -> str | None:
    for pattern, hint in VALUE_HINTS:
        if pattern.match(sample):
            return hint
    return None


def detect_patterns(values: list[str]) -> list[str]:
    if not values:
        return []
    found = [label for label, regex in VALUE_PATTERNS if all(regex.match(v) for v in values)]
    if all(len(v) == len(values[0]) for v in values):
        found.append("fixed_length")
    return found


def normalize_field_name(name: str) -> str:
    lowered = _SEPARATORS_RE.sub("_", name.lower())
    return re.sub(r"[^a-z0-9_]", "", lowered).strip("_")


def expand_abbreviations(name: str) -> str:
    """``"prod_qty"`` -> ``"product_quantity"``; unchanged names are returned as given."""
    lowered = name.lower()
    words = [w for w in _SEPARATORS_RE.split(lowered) if w]
    expanded = "_".join(ABBREVIATIONS.get(w, w) for w in words)
    return expanded if expanded != lowered else name
