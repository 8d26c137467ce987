from __future__ import annotations

import pytest

from bulk_ingest.config import parse_config, store_registry
from bulk_ingest.extraction import ExtractorConfig
from bulk_ingest.store.memory import InMemoryStore
from bulk_ingest.store.sql import SqliteStore


def test_empty_config_uses_defaults() -> None:
    parsed = parse_config({})

    assert isinstance(parsed.store, InMemoryStore)
    assert parsed.extraction == ExtractorConfig()
    assert parsed.loading.batch_size == 100
    assert parsed.progress.heartbeat_interval == 30


def test_sections_are_applied() -> None:
    parsed = parse_config(
        {
            "store": {"provider": "sqlite", "config": {"path": ":memory:"}},
            "extraction": {"min_confidence": 60, "parallel": False},
            "learning": {"min_usage": 5},
            "loading": {"batch_size": 25, "max_concurrency": 2},
        }
    )

    assert isinstance(parsed.store, SqliteStore)
    assert parsed.extraction.min_confidence == 60
    assert parsed.extraction.parallel is False
    assert parsed.learning.min_usage == 5
    assert (parsed.loading.batch_size, parsed.loading.max_concurrency) == (25, 2)


def test_unknown_provider() -> None:
    with pytest.raises(ValueError, match="Unknown store provider 'mongo'"):
        parse_config({"store": {"provider": "mongo"}})


def test_unknown_setting() -> None:
    with pytest.raises(ValueError, match="Unknown 'inference' settings"):
        parse_config({"inference": {"threshold": 0.5}})


def test_registry_lists_builtin_providers() -> None:
    assert {"memory", "sqlite", "postgres", "sql"} <= set(store_registry.providers())
