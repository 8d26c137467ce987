from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from bulk_ingest import BulkIngest
from bulk_ingest.extraction import AdaptiveExtractor, ExtractorConfig
from bulk_ingest.learning import LearningStore
from bulk_ingest.loading import BatchLoader, LifecycleQueue, LoaderConfig
from bulk_ingest.progress import ChannelConfig, ProgressChannel
from bulk_ingest.store.memory import InMemoryStore


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def loader_config() -> LoaderConfig:
    """Small batches and no retry backoff, so tests stay fast."""
    return LoaderConfig(
        batch_size=10,
        max_concurrency=3,
        progress_interval=5,
        retry_initial_wait=0,
        retry_max_wait=0,
    )


@pytest.fixture()
def events() -> LifecycleQueue:
    return LifecycleQueue()


@pytest.fixture()
def loader(
    store: InMemoryStore, loader_config: LoaderConfig, events: LifecycleQueue
) -> BatchLoader:
    return BatchLoader(store, loader_config, events)


@pytest.fixture()
def learning(store: InMemoryStore) -> LearningStore:
    return LearningStore(store)


@pytest.fixture()
def extractor() -> AdaptiveExtractor:
    return AdaptiveExtractor(ExtractorConfig(timeout=5.0))


@pytest.fixture()
async def channel() -> AsyncGenerator[ProgressChannel]:
    channel = ProgressChannel(ChannelConfig(heartbeat_interval=3600))
    await channel.start()
    yield channel
    await channel.stop()


@pytest.fixture()
async def ingest(
    store: InMemoryStore, loader_config: LoaderConfig
) -> AsyncGenerator[BulkIngest]:
    ingest = BulkIngest(
        store,
        loader_config=loader_config,
        channel_config=ChannelConfig(heartbeat_interval=3600),
    )
    await ingest.init()
    yield ingest
    await ingest.close()
