from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from bulk_ingest.learning import LearningConfig, LearningStore, normalize, similarity, variations
from bulk_ingest.models import FieldMapping, LearnedPattern
from bulk_ingest.models.utils import utcnow
from bulk_ingest.store.memory import InMemoryStore


async def _learn_times(
    learning: LearningStore, source: str, target: str, times: int, confidence: float = 100
) -> LearnedPattern:
    pattern = None
    for _ in range(times):
        pattern = await learning.learn(source, target, confidence)
    assert pattern is not None
    return pattern


# ── Helpers ──────────────────────────────────────────────────────────


class TestNames:
    def test_normalize(self) -> None:
        assert normalize("Product Name!") == "product_name"
        assert normalize("  SKU--Code ") == "sku_code"

    def test_similarity(self) -> None:
        assert similarity("abc", "cba") == 1.0
        assert similarity("ab", "cd") == 0.0
        assert similarity("", "") == 0.0

    def test_variations(self) -> None:
        assert variations("Product Name") == ["name", "product"]
        assert variations("item_desc") == ["desc", "item_description"]
        assert variations("title") == []


# ── Learning ─────────────────────────────────────────────────────────


async def test_first_confirmation_creates_pattern(
    learning: LearningStore, store: InMemoryStore
) -> None:
    pattern = await learning.learn("Product Name", "name", 90)

    assert pattern.source_pattern == "product_name"
    assert pattern.usage_count == 1
    assert pattern.success_rate == 90
    assert pattern.metadata["strategies"] == ["manual"]

    variation = await store.get_pattern("name")
    assert variation is not None
    assert variation.target_field == "name"
    assert variation.confidence == 72
    assert variation.strategy == "manual_variation"
    assert variation.metadata["original_pattern"] == "product_name"


async def test_repeat_confirmation_updates_in_place(
    learning: LearningStore, store: InMemoryStore
) -> None:
    first = await learning.learn("Product Name", "name", 90)
    second = await learning.learn("product name", "name", 60, strategy="suggested")

    assert second.id == first.id
    assert second.usage_count == 2
    assert second.success_rate == 75
    assert second.confidence == 90
    assert second.metadata["strategies"] == ["manual", "suggested"]
    assert len(await store.list_patterns()) == 3


async def test_variations_do_not_overwrite_real_patterns(
    learning: LearningStore, store: InMemoryStore
) -> None:
    await learning.learn("name", "title", 100)
    await learning.learn("Product Name", "name", 90)

    existing = await store.get_pattern("name")
    assert existing is not None
    assert existing.target_field == "title"
    assert existing.usage_count == 1


async def test_concurrent_learning_loses_no_updates(learning: LearningStore) -> None:
    await asyncio.gather(*(learning.learn("price", "price", 80) for _ in range(5)))
    pattern = await learning.learn("price", "price", 80)
    assert pattern.usage_count == 6


async def test_unusable_name_is_rejected(learning: LearningStore) -> None:
    with pytest.raises(ValueError, match="no usable characters"):
        await learning.learn("!!!", "name", 90)


async def test_learn_mappings(learning: LearningStore) -> None:
    learned = await learning.learn_mappings(
        [FieldMapping("Price", "price"), FieldMapping("Qty", "stock", 80, "suggested")]
    )
    assert [p.source_pattern for p in learned] == ["price", "qty"]
    assert learned[1].strategy == "suggested"


# ── Suggestions ──────────────────────────────────────────────────────


async def test_exact_suggestion_needs_four_confirmations(learning: LearningStore) -> None:
    await _learn_times(learning, "Product Name", "name", 3, confidence=90)
    before = await learning.suggest_field("product_name")
    assert [s.match for s in before.suggestions] == ["known"]

    await learning.learn("Product Name", "name", 90)
    found = await learning.suggest_field("PRODUCT NAME")

    assert len(found.suggestions) == 1
    suggestion = found.suggestions[0]
    assert suggestion.match == "exact"
    assert suggestion.target_field == "name"
    assert suggestion.predicted_confidence == 90
    assert suggestion.total_usage == 4
    assert suggestion.most_common_strategy == "manual"
    assert found.confidence == 90


async def test_exact_confidence_is_capped(learning: LearningStore) -> None:
    await _learn_times(learning, "sku", "sku", 4, confidence=100)
    found = await learning.suggest_field("sku")
    assert found.suggestions[0].predicted_confidence == 95


async def test_low_success_rate_never_suggests(learning: LearningStore) -> None:
    await _learn_times(learning, "Product Name", "name", 5, confidence=60)
    found = await learning.suggest_field("product_name")
    assert "exact" not in [s.match for s in found.suggestions]


async def test_fuzzy_match(learning: LearningStore) -> None:
    await _learn_times(learning, "product_name", "name", 4)

    found = await learning.suggest_field("prodct_name")

    assert [s.match for s in found.suggestions] == ["fuzzy"]
    assert found.suggestions[0].target_field == "name"
    # 11 of 12 characters shared, discounted by 0.8
    assert found.suggestions[0].predicted_confidence == 73


async def test_partial_match(learning: LearningStore) -> None:
    await _learn_times(learning, "product_name", "name", 4)

    found = await learning.suggest_field("product_sku_code")

    assert [s.match for s in found.suggestions] == ["partial"]
    assert found.suggestions[0].pattern == "product_name"
    assert found.suggestions[0].predicted_confidence == 60


async def test_suggest_skips_fields_without_matches(learning: LearningStore) -> None:
    await _learn_times(learning, "price", "price", 4)
    results = await learning.suggest(["Price", "zzz"])
    assert [r.source_field for r in results] == ["Price"]


async def test_max_suggestions(store: InMemoryStore) -> None:
    learning = LearningStore(store, LearningConfig(max_suggestions=1))
    await _learn_times(learning, "product_name", "name", 4)
    await _learn_times(learning, "product_price", "price", 5)

    found = await learning.suggest_field("product_sku_code")
    assert len(found.suggestions) == 1


# ── Known target fields ──────────────────────────────────────────────


class TestKnownTargets:
    async def test_fresh_store_matches_target_names(self, learning: LearningStore) -> None:
        found = await learning.suggest_field("Price")

        assert [s.match for s in found.suggestions] == ["known"]
        assert found.suggestions[0].target_field == "price"
        assert found.suggestions[0].predicted_confidence == 85
        assert found.suggestions[0].total_usage == 0

    async def test_common_spelling(self, learning: LearningStore) -> None:
        found = await learning.suggest_field("Unit Price")
        assert found.suggestions[0].target_field == "price"
        assert found.suggestions[0].predicted_confidence == 80

        found = await learning.suggest_field("Qty")
        assert found.suggestions[0].target_field == "stock"

    async def test_affixes_are_stripped(self, learning: LearningStore) -> None:
        found = await learning.suggest_field("Product Name")
        assert found.suggestions[0].target_field == "name"
        assert found.suggestions[0].pattern == "name"

    async def test_close_spelling(self, learning: LearningStore) -> None:
        found = await learning.suggest_field("prce")
        assert found.suggestions[0].target_field == "price"
        # 4 of 5 characters in sequence, scaled to 75
        assert found.suggestions[0].predicted_confidence == 67

    async def test_unrelated_name(self, learning: LearningStore) -> None:
        assert (await learning.suggest_field("zzz")).suggestions == []

    async def test_learned_mapping_takes_precedence(self, learning: LearningStore) -> None:
        await _learn_times(learning, "Price", "compare_at_price", 4)
        found = await learning.suggest_field("Price")
        assert [s.match for s in found.suggestions] == ["exact"]
        assert found.suggestions[0].target_field == "compare_at_price"

    async def test_can_be_disabled(self, store: InMemoryStore) -> None:
        learning = LearningStore(store, LearningConfig(known_targets=False))
        assert (await learning.suggest_field("Price")).suggestions == []


# ── Maintenance ──────────────────────────────────────────────────────


async def test_statistics(learning: LearningStore) -> None:
    await learning.learn("Product Name", "name", 90)

    stats = await learning.statistics()

    assert stats.total_patterns == 3
    assert stats.strategies == {"manual": 1, "manual_variation": 2}
    assert stats.most_common_strategy == "manual_variation"
    assert stats.high_confidence_patterns == 1
    assert stats.recently_used == 3


async def test_statistics_when_empty(learning: LearningStore) -> None:
    stats = await learning.statistics()
    assert stats.total_patterns == 0
    assert stats.most_common_strategy == "unknown"


async def test_prune_removes_stale_rare_patterns(
    learning: LearningStore, store: InMemoryStore
) -> None:
    old = utcnow() - timedelta(days=200)
    await store.upsert_pattern(LearnedPattern("legacy", "name", 80, last_used_at=old))
    await learning.learn("price", "price", 90)

    assert await learning.prune() == 1
    assert await store.get_pattern("legacy") is None
    assert await store.get_pattern("price") is not None


async def test_warm_cache_holds_frequent_patterns(
    learning: LearningStore, store: InMemoryStore
) -> None:
    await store.upsert_pattern(LearnedPattern("brand", "brand", 90, usage_count=11, success_rate=90))
    await store.upsert_pattern(LearnedPattern("size", "size", 90, usage_count=4, success_rate=90))

    assert await learning.warm_cache() == 1
    await store.reset()

    found = await learning.suggest_field("brand")
    assert found.suggestions[0].match == "exact"
