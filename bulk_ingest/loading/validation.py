"""Per-entity validation rules applied to mapped records.

Rules never raise for bad data. They return a :class:`ValidationOutcome`
holding the corrected record, blocking ``errors`` and non-blocking
``warnings`` (problems that were fixed automatically).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from bulk_ingest.inference.probes import parse_date, parse_number
from bulk_ingest.models import EntityType

logger = logging.getLogger(__name__)

PRODUCT_STATUSES = ("draft", "review", "live", "archived")
DEFAULT_PRODUCT_STATUS = "draft"
DEFAULT_SUGGESTION = "Check required fields and data formats"

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_SLUG_DASH_RE = re.compile(r"-+")


@dataclass
class ValidationOutcome:
    record: dict[str, Any]
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def auto_fixable(self) -> bool:
        """Every problem found was corrected in place."""
        return not self.errors

    @property
    def suggestion(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(self.suggestions) if self.suggestions else DEFAULT_SUGGESTION

    def fail(self, error: str, suggestion: str | None = None) -> None:
        self.errors.append(error)
        if suggestion:
            self.suggestions.append(suggestion)

    def warn(self, warning: str) -> None:
        self.warnings.append(warning)


Rule = Callable[[ValidationOutcome], None]

_RULES: dict[EntityType, Rule] = {}


def validation_rule(entity_type: EntityType) -> Callable[[Rule], Rule]:
    def decorator(rule: Rule) -> Rule:
        _RULES[entity_type] = rule
        return rule

    return decorator


def supported_entity_types() -> list[str]:
    return [t.value for t in _RULES]


def validate(entity_type: EntityType | str, record: dict[str, Any]) -> ValidationOutcome:
    try:
        rule = _RULES[EntityType(entity_type)]
    except (KeyError, ValueError):
        raise ValueError(
            f"Unknown entity type '{entity_type}'. Available: {supported_entity_types()}"
        ) from None
    outcome = ValidationOutcome(record=dict(record))
    rule(outcome)
    return outcome


# ── Value helpers ────────────────────────────────────────────────────


def slugify(text: str) -> str:
    """``"Red Shirt (XL)"`` -> ``"red-shirt-xl"``."""
    slug = _SLUG_STRIP_RE.sub("", text.lower())
    slug = _SLUG_SPACE_RE.sub("-", slug.strip())
    return _SLUG_DASH_RE.sub("-", slug).strip("-")


def to_minor_units(amount: float) -> int:
    """Major currency units to integer cents, rounding half up."""
    cents = Decimal(str(amount)) * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_blank(value: Any) -> bool:
    return _text(value) is None


def _require(outcome: ValidationOutcome, key: str, label: str) -> bool:
    if _is_blank(outcome.record.get(key)):
        outcome.fail(f"{label} is required", f"Map a source column to '{key}'")
        return False
    return True


def _ensure_slug(outcome: ValidationOutcome) -> None:
    record = outcome.record
    if _is_blank(record.get("slug")) and not _is_blank(record.get("name")):
        record["slug"] = slugify(str(record["name"]))


def _money(outcome: ValidationOutcome, key: str, label: str, *, required_if_present: bool) -> None:
    record = outcome.record
    if _is_blank(record.get(key)):
        record.pop(key, None)
        return
    amount = parse_number(record[key])
    if amount is None:
        if required_if_present:
            outcome.fail(
                f"{label} must be a number (got {record[key]!r})",
                f"Fix the '{key}' value or leave it empty",
            )
        else:
            outcome.warn(f"{label} {record[key]!r} is not a number; dropped")
            record[key] = None
        return
    if amount < 0:
        outcome.warn(f"{label} was negative; using {abs(amount):g}")
        amount = abs(amount)
    record[key] = to_minor_units(amount)


# ── Rules ────────────────────────────────────────────────────────────


@validation_rule(EntityType.PRODUCT)
def validate_product(outcome: ValidationOutcome) -> None:
    record = outcome.record
    _require(outcome, "name", "Product name")
    _ensure_slug(outcome)
    _money(outcome, "price", "Price", required_if_present=True)
    _money(outcome, "compare_at_price", "Compare-at price", required_if_present=False)

    if "stock" in record:
        stock = parse_number(record["stock"]) if not _is_blank(record["stock"]) else None
        if stock is None:
            if not _is_blank(record["stock"]):
                outcome.warn(f"Stock {record['stock']!r} is not a number; using 0")
            record["stock"] = 0
        else:
            if stock < 0:
                outcome.warn("Stock was negative; using its absolute value")
            record["stock"] = int(abs(stock))

    status = _text(record.get("status"))
    if status is not None and status.lower() not in PRODUCT_STATUSES:
        outcome.warn(f"Invalid status {status!r}, defaulted to {DEFAULT_PRODUCT_STATUS}")
        record["status"] = DEFAULT_PRODUCT_STATUS
    elif status is not None:
        record["status"] = status.lower()

    if not _is_blank(record.get("published_at")):
        published = parse_date(str(record["published_at"]))
        if published is None:
            outcome.warn(f"Unparseable published_at {record['published_at']!r}; cleared")
            record["published_at"] = None
        else:
            record["published_at"] = published.isoformat()


@validation_rule(EntityType.BRAND)
def validate_brand(outcome: ValidationOutcome) -> None:
    _require(outcome, "name", "Brand name")
    _ensure_slug(outcome)


@validation_rule(EntityType.ATTRIBUTE)
def validate_attribute(outcome: ValidationOutcome) -> None:
    _require(outcome, "product_id", "Product ID")
    _require(outcome, "attribute_name", "Attribute name")
