from __future__ import annotations

import logging

from bulk_ingest.extraction.base import ExtractionStrategy

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Explicit, priority-ordered list of extraction strategies.

    Built-in strategies are registered lazily on first access; callers
    can :meth:`register` their own (replacing any strategy of the same
    name) before or after that.
    """

    def __init__(self) -> None:
        self._strategies: dict[str, ExtractionStrategy] = {}
        self._defaults_loaded = False

    def register(self, strategy: ExtractionStrategy) -> None:
        if strategy.name in self._strategies:
            logger.info("Replacing extraction strategy '%s'", strategy.name)
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> ExtractionStrategy:
        self._ensure_defaults()
        try:
            return self._strategies[name]
        except KeyError:
            raise ValueError(
                f"Unknown extraction strategy '{name}'. "
                f"Available: {list(self._strategies)}"
            ) from None

    def strategies(self) -> list[ExtractionStrategy]:
        """All strategies, highest priority first."""
        self._ensure_defaults()
        return sorted(self._strategies.values(), key=lambda s: s.priority, reverse=True)

    def _ensure_defaults(self) -> None:
        if self._defaults_loaded:
            return
        self._defaults_loaded = True
        self._load_defaults()

    def _load_defaults(self) -> None:
        from bulk_ingest.extraction.strategies import (
            AlternativeDelimitersStrategy,
            ComplexFieldsStrategy,
            DirtyRecoveryStrategy,
            NumericHeaderlessStrategy,
            StandardStrategy,
        )

        for cls in (
            StandardStrategy,
            AlternativeDelimitersStrategy,
            NumericHeaderlessStrategy,
            ComplexFieldsStrategy,
            DirtyRecoveryStrategy,
        ):
            self._strategies.setdefault(cls.name, cls())
