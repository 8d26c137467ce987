from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from bulk_ingest.extraction.extractor import ExtractorConfig
from bulk_ingest.inference.engine import InferenceConfig
from bulk_ingest.learning.store import LearningConfig
from bulk_ingest.loading.loader import LoaderConfig
from bulk_ingest.progress.channel import ChannelConfig
from bulk_ingest.store.base import Store

T = TypeVar("T")
C = TypeVar("C")


class _Registry(Generic[T]):
    """Lazily-populated factory registry.

    :meth:`build` resolves a provider name to a factory, calling
    ``factory.from_config(config)`` if available, otherwise
    ``factory(**config)``.
    """

    def __init__(self, label: str) -> None:
        self._label = label
        self._factories: dict[str, type[T]] = {}
        self._defaults_loaded = False

    def register(self, name: str, cls: type[T]) -> None:
        self._factories[name] = cls

    def providers(self) -> list[str]:
        self._ensure_defaults()
        return list(self._factories)

    def build(self, provider: str, config: dict[str, Any]) -> T:
        self._ensure_defaults()
        factory = self._factories.get(provider)
        if factory is None:
            raise ValueError(
                f"Unknown {self._label} provider '{provider}'. "
                f"Available: {list(self._factories)}"
            )
        if hasattr(factory, "from_config"):
            return factory.from_config(config)  # type: ignore[return-value]
        return factory(**config)  # type: ignore[return-value]

    def _ensure_defaults(self) -> None:
        if not self._defaults_loaded:
            self._defaults_loaded = True
            self._load_defaults()

    def _load_defaults(self) -> None:
        """Subclasses register their built-in factories here."""


class _StoreRegistry(_Registry[Store]):
    def _load_defaults(self) -> None:
        from bulk_ingest.store.memory import InMemoryStore
        from bulk_ingest.store.sql import PostgresStore, SqliteStore, SqlStore

        self.register("memory", InMemoryStore)
        self.register("sqlite", SqliteStore)
        self.register("postgres", PostgresStore)
        self.register("sql", SqlStore)


store_registry = _StoreRegistry("store")


@dataclass
class BulkIngestConfig:
    store: Store
    extraction: ExtractorConfig
    inference: InferenceConfig
    learning: LearningConfig
    loading: LoaderConfig
    progress: ChannelConfig


def _section(cls: type[C], config: dict[str, Any], name: str) -> C:
    values = config.get(name) or {}
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown '{name}' settings: {unknown}. Available: {sorted(known)}")
    return cls(**values)


def parse_config(config: dict[str, Any]) -> BulkIngestConfig:
    """Parse a user config dict into a store and per-component settings.

    Expected shape::

        {
            "store": {"provider": "sqlite", "config": {"path": "ingest.db"}},
            "extraction": {"min_confidence": 70, "parallel": True},
            "inference": {"type_threshold": 0.8},
            "learning": {"min_usage": 3},
            "loading": {"batch_size": 100, "max_concurrency": 5},
            "progress": {"heartbeat_interval": 30},
        }

    Every section is optional; without ``store`` an in-memory store is used.
    """
    store_cfg = config.get("store") or {}
    store = store_registry.build(
        store_cfg.get("provider", "memory"),
        store_cfg.get("config", {}),
    )
    return BulkIngestConfig(
        store=store,
        extraction=_section(ExtractorConfig, config, "extraction"),
        inference=_section(InferenceConfig, config, "inference"),
        learning=_section(LearningConfig, config, "learning"),
        loading=_section(LoaderConfig, config, "loading"),
        progress=_section(ChannelConfig, config, "progress"),
    )
