from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from difflib import SequenceMatcher
from statistics import fmean

from bulk_ingest.models import FieldMapping, LearnedPattern
from bulk_ingest.models.utils import utcnow
from bulk_ingest.store import Store

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE_CAP = 95
HIGH_CONFIDENCE_RATE = 80
RECENT_WINDOW = timedelta(days=7)
CACHE_WARM_USAGE = 10
CACHE_SIZE = 50
MIN_PARTIAL_WORD = 3

VARIATION_PREFIXES = ("product_", "item_", "sku_", "field_")
VARIATION_SUFFIXES = ("_name", "_id", "_value", "_field")
VARIATION_EXPANSIONS = {
    "desc": "description",
    "qty": "quantity",
    "amt": "amount",
    "num": "number",
    "img": "image",
    "url": "link",
    "wt": "weight",
    "ht": "height",
    "wd": "width",
}

# Field names the loader's validation rules read, with common source spellings.
KNOWN_TARGETS: dict[str, tuple[str, ...]] = {
    "name": ("title", "product_name", "item_name", "product_title", "item_title"),
    "slug": ("product_slug", "url_slug", "permalink", "handle"),
    "price": ("cost", "retail_price", "unit_price", "selling_price", "current_price", "list_price"),
    "compare_at_price": ("original_price", "msrp", "rrp", "was_price", "crossed_price"),
    "stock": ("inventory", "quantity", "qty", "stock_level", "available", "in_stock"),
    "status": ("product_status", "state", "visibility"),
    "published_at": ("published", "publish_date", "release_date", "launch_date"),
    "product_id": ("parent_id", "parent_sku"),
    "attribute_name": ("attribute", "option_name", "property"),
}
KNOWN_EXACT_CONFIDENCE = 85
KNOWN_ALIAS_CONFIDENCE = 80
KNOWN_FUZZY_CAP = 75
KNOWN_FUZZY_THRESHOLD = 0.8

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize(field_name: str) -> str:
    """``"Product Name!"`` -> ``"product_name"``."""
    return _NON_ALNUM_RE.sub("_", field_name.lower()).strip("_")


def similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two strings' character sets.

    Ignores order and repetition, so anagrams score 1.0.
    """
    left, right = set(a), set(b)
    union = left | right
    return len(left & right) / len(union) if union else 0.0


def variations(field_name: str) -> list[str]:
    """Affix-stripped and abbreviation-expanded forms, excluding the name itself."""
    key = normalize(field_name)
    found: dict[str, None] = {}
    for prefix in VARIATION_PREFIXES:
        if key.startswith(prefix):
            found[key[len(prefix) :]] = None
    for suffix in VARIATION_SUFFIXES:
        if key.endswith(suffix):
            found[key[: -len(suffix)]] = None
    expanded = "_".join(VARIATION_EXPANSIONS.get(w, w) for w in key.split("_"))
    found[expanded] = None
    return [v for v in found if v and v != key]


def most_common_strategy(strategies: list[str]) -> str:
    if not strategies:
        return "unknown"
    return Counter(strategies).most_common(1)[0][0]


@dataclass
class LearningConfig:
    min_usage: int = 3
    min_success_rate: float = 70.0
    fuzzy_threshold: float = 0.7
    fuzzy_discount: float = 0.8
    partial_discount: float = 0.6
    min_suggestion_confidence: float = 50.0
    variation_factor: float = 0.8
    max_suggestions: int = 3
    retention_days: int = 90
    prune_usage_floor: int = 3
    strategy_history: int = 10
    known_targets: bool = True


@dataclass
class Suggestion:
    source_field: str
    target_field: str
    pattern: str
    predicted_confidence: float
    match: str
    reasoning: str
    total_usage: int
    success_rate: float
    average_confidence: float
    most_common_strategy: str


@dataclass
class FieldSuggestions:
    source_field: str
    suggestions: list[Suggestion] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return max((s.predicted_confidence for s in self.suggestions), default=0.0)


@dataclass
class LearningStatistics:
    total_patterns: int
    average_usage: float
    average_success_rate: float
    high_confidence_patterns: int
    recently_used: int
    strategies: dict[str, int]
    most_common_strategy: str


class LearningStore:
    """Remembers confirmed field mappings and suggests targets for new fields.

    Writes go through one lock so concurrent ``learn`` calls for the same
    key never lose an update. Exact lookups consult an in-process cache
    of frequently used patterns first (see :meth:`warm_cache`).
    """

    def __init__(self, store: Store, config: LearningConfig | None = None) -> None:
        self._store = store
        self._config = config or LearningConfig()
        self._lock = asyncio.Lock()
        self._cache: dict[str, LearnedPattern] = {}

    @property
    def config(self) -> LearningConfig:
        return self._config

    # ── Learning ─────────────────────────────────────────────────────

    async def learn(
        self,
        source_field: str,
        target_field: str,
        confidence: float,
        strategy: str = "manual",
        metadata: dict | None = None,
    ) -> LearnedPattern:
        key = normalize(source_field)
        if not key:
            raise ValueError(f"Field name '{source_field}' has no usable characters")

        async with self._lock:
            existing = await self._store.get_pattern(key)
            if existing is None:
                pattern = LearnedPattern(
                    source_pattern=key,
                    target_field=target_field,
                    confidence=confidence,
                    success_rate=confidence,
                    strategy=strategy,
                    metadata={
                        **(metadata or {}),
                        "strategies": [strategy],
                        "first_seen_at": utcnow().isoformat(),
                    },
                )
                logger.info("Learned new pattern %s -> %s (%.0f%%)", key, target_field, confidence)
            else:
                pattern = existing
                count = existing.usage_count
                # Running average over every confirmation.
                pattern.success_rate = (existing.success_rate * count + confidence) / (count + 1)
                pattern.usage_count = count + 1
                pattern.confidence = max(existing.confidence, confidence)
                pattern.last_used_at = utcnow()
                history = [*existing.metadata.get("strategies", []), strategy]
                pattern.metadata = {
                    **existing.metadata,
                    **(metadata or {}),
                    "strategies": history[-self._config.strategy_history :],
                }
                logger.info(
                    "Updated pattern %s -> %s (usage %d, success %.1f%%)",
                    key,
                    pattern.target_field,
                    pattern.usage_count,
                    pattern.success_rate,
                )

            stored = await self._store.upsert_pattern(pattern)
            if key in self._cache:
                self._cache[key] = stored
            await self._learn_variations(source_field, target_field, confidence, strategy)
        return stored

    async def learn_mappings(self, mappings: Iterable[FieldMapping]) -> list[LearnedPattern]:
        return [
            await self.learn(m.source_field, m.target_field, m.confidence, m.strategy)
            for m in mappings
        ]

    async def _learn_variations(
        self, source_field: str, target_field: str, confidence: float, strategy: str
    ) -> None:
        factor = self._config.variation_factor
        for variation in variations(source_field):
            if await self._store.get_pattern(variation) is not None:
                continue
            await self._store.upsert_pattern(
                LearnedPattern(
                    source_pattern=variation,
                    target_field=target_field,
                    confidence=round(confidence * factor),
                    success_rate=confidence * factor,
                    strategy=f"{strategy}_variation",
                    metadata={
                        "is_variation": True,
                        "original_pattern": normalize(source_field),
                        "generated_at": utcnow().isoformat(),
                    },
                )
            )

    # ── Suggestions ──────────────────────────────────────────────────

    async def suggest(self, source_fields: Iterable[str]) -> list[FieldSuggestions]:
        """Suggestions for each field that has at least one."""
        results = []
        for source_field in source_fields:
            found = await self.suggest_field(source_field)
            if found.suggestions:
                results.append(found)
        return results

    async def suggest_field(self, source_field: str) -> FieldSuggestions:
        key = normalize(source_field)
        suggestions = await self._exact(source_field, key)
        if not suggestions:
            suggestions = await self._fuzzy(source_field, key)
        if not suggestions:
            suggestions = await self._partial(source_field, key)
        if not suggestions and self._config.known_targets:
            suggestions = self._known(source_field, key)
        suggestions.sort(key=lambda s: s.predicted_confidence, reverse=True)
        return FieldSuggestions(source_field, suggestions[: self._config.max_suggestions])

    def _qualifies(self, pattern: LearnedPattern) -> bool:
        return (
            pattern.usage_count > self._config.min_usage
            and pattern.success_rate > self._config.min_success_rate
        )

    async def _exact(self, source_field: str, key: str) -> list[Suggestion]:
        pattern = self._cache.get(key) or await self._store.get_pattern(key)
        if pattern is None or not self._qualifies(pattern):
            return []
        return [
            self._suggestion(
                source_field,
                pattern,
                min(EXACT_CONFIDENCE_CAP, pattern.success_rate),
                "exact",
                f"Exact pattern match (used {pattern.usage_count} times)",
            )
        ]

    async def _fuzzy(self, source_field: str, key: str) -> list[Suggestion]:
        candidates = await self._store.list_patterns(
            min_usage=self._config.min_usage,
            min_success_rate=self._config.min_success_rate,
        )
        found = []
        for pattern in candidates:
            score = similarity(key, pattern.source_pattern)
            if score <= self._config.fuzzy_threshold:
                continue
            predicted = round(pattern.success_rate * score * self._config.fuzzy_discount)
            if predicted > self._config.min_suggestion_confidence:
                found.append(
                    self._suggestion(
                        source_field,
                        pattern,
                        predicted,
                        "fuzzy",
                        f'Fuzzy pattern match ({round(score * 100)}% similar to '
                        f'"{pattern.source_pattern}")',
                    )
                )
        return found

    async def _partial(self, source_field: str, key: str) -> list[Suggestion]:
        found: dict[str, Suggestion] = {}
        for word in (w for w in key.split("_") if len(w) >= MIN_PARTIAL_WORD):
            matches = await self._store.search_patterns(
                word,
                min_usage=self._config.min_usage,
                min_success_rate=self._config.min_success_rate,
                limit=self._config.max_suggestions,
            )
            for pattern in matches:
                predicted = round(pattern.success_rate * self._config.partial_discount)
                if predicted <= self._config.min_suggestion_confidence:
                    continue
                found.setdefault(
                    pattern.source_pattern,
                    self._suggestion(
                        source_field,
                        pattern,
                        predicted,
                        "partial",
                        f'Partial word match ("{word}" found in "{pattern.source_pattern}")',
                    ),
                )
        return list(found.values())

    def _known(self, source_field: str, key: str) -> list[Suggestion]:
        """Match against the target fields themselves when nothing learned applies."""
        candidates = [key, *variations(source_field)]
        for candidate in candidates:
            if candidate in KNOWN_TARGETS:
                return [
                    self._known_suggestion(
                        source_field,
                        candidate,
                        candidate,
                        KNOWN_EXACT_CONFIDENCE,
                        f'Matches known field "{candidate}"',
                    )
                ]
        for candidate in candidates:
            for target, spellings in KNOWN_TARGETS.items():
                if candidate in spellings:
                    return [
                        self._known_suggestion(
                            source_field,
                            target,
                            candidate,
                            KNOWN_ALIAS_CONFIDENCE,
                            f'"{candidate}" is a common name for "{target}"',
                        )
                    ]

        best: tuple[float, str, str] | None = None
        for target, spellings in KNOWN_TARGETS.items():
            for spelling in (target, *spellings):
                score = SequenceMatcher(None, key, spelling).ratio()
                if score >= KNOWN_FUZZY_THRESHOLD and (best is None or score > best[0]):
                    best = (score, target, spelling)
        if best is None:
            return []
        score, target, spelling = best
        return [
            self._known_suggestion(
                source_field,
                target,
                spelling,
                round(score * KNOWN_FUZZY_CAP),
                f'Close to known name "{spelling}" ({round(score * 100)}% similar)',
            )
        ]

    @staticmethod
    def _known_suggestion(
        source_field: str, target: str, spelling: str, predicted: float, reasoning: str
    ) -> Suggestion:
        return Suggestion(
            source_field=source_field,
            target_field=target,
            pattern=spelling,
            predicted_confidence=predicted,
            match="known",
            reasoning=reasoning,
            total_usage=0,
            success_rate=0.0,
            average_confidence=predicted,
            most_common_strategy="known",
        )

    @staticmethod
    def _suggestion(
        source_field: str,
        pattern: LearnedPattern,
        predicted: float,
        match: str,
        reasoning: str,
    ) -> Suggestion:
        return Suggestion(
            source_field=source_field,
            target_field=pattern.target_field,
            pattern=pattern.source_pattern,
            predicted_confidence=predicted,
            match=match,
            reasoning=reasoning,
            total_usage=pattern.usage_count,
            success_rate=pattern.success_rate,
            average_confidence=pattern.confidence,
            most_common_strategy=most_common_strategy(pattern.metadata.get("strategies", [])),
        )

    # ── Maintenance ──────────────────────────────────────────────────

    async def statistics(self) -> LearningStatistics:
        patterns = await self._store.list_patterns()
        recent_cutoff = utcnow() - RECENT_WINDOW
        strategies = Counter(p.strategy for p in patterns)
        return LearningStatistics(
            total_patterns=len(patterns),
            average_usage=fmean(p.usage_count for p in patterns) if patterns else 0.0,
            average_success_rate=fmean(p.success_rate for p in patterns) if patterns else 0.0,
            high_confidence_patterns=sum(
                1 for p in patterns if p.success_rate > HIGH_CONFIDENCE_RATE
            ),
            recently_used=sum(1 for p in patterns if p.last_used_at > recent_cutoff),
            strategies=dict(strategies),
            most_common_strategy=strategies.most_common(1)[0][0] if strategies else "unknown",
        )

    async def warm_cache(self) -> int:
        patterns = await self._store.list_patterns(min_usage=CACHE_WARM_USAGE)
        self._cache = {p.source_pattern: p for p in patterns[:CACHE_SIZE]}
        logger.info("Warmed pattern cache with %d high-usage patterns", len(self._cache))
        return len(self._cache)

    async def prune(self) -> int:
        cutoff = utcnow() - timedelta(days=self._config.retention_days)
        async with self._lock:
            removed = await self._store.delete_patterns(
                last_used_before=cutoff,
                usage_below=self._config.prune_usage_floor,
            )
            self._cache = {
                key: p
                for key, p in self._cache.items()
                if not (p.last_used_at < cutoff and p.usage_count < self._config.prune_usage_floor)
            }
        logger.info("Pruned %d stale patterns", removed)
        return removed
