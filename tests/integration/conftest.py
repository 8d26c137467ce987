from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from bulk_ingest.store.sql import SqliteStore


def pytest_collection_modifyitems(items: list, config) -> None:  # noqa: ANN001
    """Auto-mark every test in the integration directory."""
    marker = pytest.mark.integration
    for item in items:
        if "integration" in str(item.path):
            item.add_marker(marker)


@pytest.fixture()
async def sql_store() -> AsyncGenerator[SqliteStore]:
    """An in-memory SQLite store with freshly created tables."""
    store = SqliteStore(":memory:")
    await store.init()

    yield store

    await store.close()
