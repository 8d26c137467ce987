from __future__ import annotations

import asyncio

import pytest

from bulk_ingest.exceptions import (
    InvalidStatusTransitionError,
    MappingError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from bulk_ingest.loading import (
    BatchLoader,
    LifecycleQueue,
    LoaderConfig,
    apply_mapping,
    check_mappings,
    partition,
)
from bulk_ingest.loading.events import (
    BatchCompletedEvent,
    BatchFailedEvent,
    CancelledEvent,
    CompletedEvent,
    ErrorEvent,
    ProgressEvent,
)
from bulk_ingest.models import (
    EntityRecord,
    FieldMapping,
    ImportBatch,
    ImportBatchStatus,
    ImportRecordLog,
    ImportSessionStatus,
    RecordStatus,
)
from bulk_ingest.store.memory import InMemoryStore

MAPPINGS = [FieldMapping("title", "name"), FieldMapping("cost", "price")]


def _rows(count: int) -> list[dict[str, str]]:
    return [{"title": f"Item {i}", "cost": f"{i}.50", "extra": "ignored"} for i in range(count)]


class FlakyStore(InMemoryStore):
    """Raises StoreUnavailableError on entity inserts while failures remain."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.insert_calls = 0

    async def insert_entity(self, record: EntityRecord) -> str:
        self.insert_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailableError("database is restarting")
        return await super().insert_entity(record)


class GatedStore(InMemoryStore):
    """Blocks entity inserts until ``gate`` is set; tracks concurrent inserts."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.in_flight = 0
        self.peak = 0

    async def insert_entity(self, record: EntityRecord) -> str:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.started.set()
        try:
            await self.gate.wait()
            await asyncio.sleep(0)
            return await super().insert_entity(record)
        finally:
            self.in_flight -= 1


class ExplodingStore(InMemoryStore):
    """Raises an unexpected error when inserting a poisoned record."""

    async def insert_entity(self, record: EntityRecord) -> str:
        if record.data.get("name") == "poison":
            raise RuntimeError("constraint violated")
        return await super().insert_entity(record)


class StalledBatchStore(InMemoryStore):
    """Cannot mark one batch as processing."""

    def __init__(self, batch_number: int) -> None:
        super().__init__()
        self.batch_number = batch_number

    async def update_batch(self, batch: ImportBatch) -> None:
        if batch.batch_number == self.batch_number and batch.status == ImportBatchStatus.PROCESSING:
            raise StoreUnavailableError("batch table locked")
        await super().update_batch(batch)


class LostLogStore(InMemoryStore):
    """Stores the entity for one row but never manages to write its success log."""

    def __init__(self, record_index: int) -> None:
        super().__init__()
        self.record_index = record_index
        self.armed = True

    async def add_record_log(self, log: ImportRecordLog) -> ImportRecordLog:
        if self.armed and log.record_index == self.record_index and log.status == "success":
            raise StoreUnavailableError("audit log unavailable")
        return await super().add_record_log(log)


def _fast_config(**overrides: int) -> LoaderConfig:
    values = {
        "batch_size": 10,
        "max_concurrency": 3,
        "retry_initial_wait": 0,
        "retry_max_wait": 0,
    }
    values.update(overrides)
    return LoaderConfig(**values)


# ── Helpers ──────────────────────────────────────────────────────────


class TestHelpers:
    def test_partition(self) -> None:
        batches = partition("s1", 250, 100)
        assert [(b.start_index, b.end_index) for b in batches] == [(0, 100), (100, 200), (200, 250)]
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert partition("s1", 0, 100) == []

    def test_apply_mapping(self) -> None:
        row = {"title": "Hat", "cost": "3", "extra": "x"}
        mapped = apply_mapping(row, [*MAPPINGS, FieldMapping("missing", "sku")])
        assert mapped == {"name": "Hat", "price": "3"}

    @pytest.mark.parametrize(
        ("mappings", "entity_type", "message"),
        [
            ([], "product", "No field mappings supplied"),
            ([FieldMapping(" ", "name")], "product", "Blank field name"),
            (
                [FieldMapping("a", "name"), FieldMapping("b", "name")],
                "product",
                "mapped more than once",
            ),
            (MAPPINGS, "widget", "Unknown entity type"),
        ],
    )
    def test_check_mappings(
        self, mappings: list[FieldMapping], entity_type: str, message: str
    ) -> None:
        with pytest.raises(MappingError, match=message):
            check_mappings(mappings, entity_type)


# ── Runs ─────────────────────────────────────────────────────────────


async def test_250_rows_in_three_batches(store: InMemoryStore) -> None:
    loader = BatchLoader(store, _fast_config(batch_size=100))

    session = await loader.load(_rows(250), "product", MAPPINGS, file_name="items.csv")

    assert session.status == ImportSessionStatus.COMPLETED
    assert session.processed_records == 250
    assert session.successful_records == 250
    assert session.failed_records == 0
    assert session.completed_at is not None
    batches = await loader.get_batches(session.id)
    assert [b.record_count for b in batches] == [100, 100, 50]
    assert all(b.status == ImportBatchStatus.COMPLETED for b in batches)
    entities = await store.list_entities(entity_type="product")
    assert len(entities) == 250
    assert {"name", "slug", "price"} == set(entities[0].data)


async def test_invalid_rows_complete_with_errors(
    loader: BatchLoader, store: InMemoryStore
) -> None:
    rows = _rows(5)
    rows[1]["title"] = ""
    rows[3]["cost"] = "-2"

    session = await loader.load(rows, "product", MAPPINGS)

    assert session.status == ImportSessionStatus.COMPLETED_WITH_ERRORS
    assert (session.successful_records, session.failed_records) == (4, 1)

    logs = await store.list_record_logs(session.id)
    assert [log.status for log in logs] == ["success", "failed", "success", "success", "success"]
    assert logs[1].validation_errors == ["Product name is required"]
    assert logs[1].record_data == rows[1]
    assert logs[3].warnings == ["Price was negative; using 2"]
    assert logs[3].entity_id is not None


async def test_empty_input_completes(loader: BatchLoader) -> None:
    session = await loader.load([], "brand", [FieldMapping("name", "name")])
    assert session.status == ImportSessionStatus.COMPLETED
    assert session.processed_records == 0


async def test_bad_mapping_fails_session(loader: BatchLoader, events: LifecycleQueue) -> None:
    session = await loader.create_session("product", [])
    result = await loader.run(session.id, _rows(3))

    assert result.status == ImportSessionStatus.FAILED
    assert result.error_message == "No field mappings supplied"
    emitted = events.drain()
    assert [type(e) for e in emitted] == [ErrorEvent]


async def test_run_mappings_override_session_mappings(loader: BatchLoader) -> None:
    session = await loader.create_session("product", [])
    result = await loader.run(session.id, _rows(2), MAPPINGS)
    assert result.status == ImportSessionStatus.COMPLETED
    assert result.field_mappings == MAPPINGS


async def test_unknown_session(loader: BatchLoader) -> None:
    with pytest.raises(SessionNotFoundError):
        await loader.run("missing", [])


async def test_finished_session_cannot_run_again(loader: BatchLoader) -> None:
    session = await loader.load(_rows(2), "product", MAPPINGS)
    with pytest.raises(InvalidStatusTransitionError):
        await loader.run(session.id, _rows(2))


async def test_events_for_a_run(loader: BatchLoader, events: LifecycleQueue) -> None:
    session = await loader.load(_rows(25), "product", MAPPINGS)

    emitted = events.drain()
    completed = [e for e in emitted if isinstance(e, BatchCompletedEvent)]
    assert sorted(e.batch_number for e in completed) == [1, 2, 3]
    assert any(isinstance(e, ProgressEvent) for e in emitted)
    assert isinstance(emitted[-1], CompletedEvent)
    assert emitted[-1].status == "completed"
    assert emitted[-1].session_id == session.id
    assert emitted[-1].successful_records == 25


# ── Concurrency ──────────────────────────────────────────────────────


async def test_concurrency_is_bounded() -> None:
    store = GatedStore()
    loader = BatchLoader(store, _fast_config(max_concurrency=3))
    session = await loader.create_session("product", MAPPINGS)

    task = asyncio.create_task(loader.run(session.id, _rows(100)))
    await store.started.wait()
    for _ in range(5):
        await asyncio.sleep(0)
    assert store.in_flight == 3
    assert loader.get_metrics(session.id) is not None

    store.gate.set()
    result = await task

    assert store.peak == 3
    assert result.processed_records == 100
    assert loader.get_metrics(session.id) is None


async def test_session_cannot_run_twice_at_once() -> None:
    store = GatedStore()
    loader = BatchLoader(store, _fast_config())
    session = await loader.create_session("product", MAPPINGS)
    task = asyncio.create_task(loader.run(session.id, _rows(5)))
    await store.started.wait()

    with pytest.raises(SessionAlreadyActiveError):
        await loader.run(session.id, _rows(5))
    with pytest.raises(SessionAlreadyActiveError):
        await loader.retry_failed(session.id)

    store.gate.set()
    await task


# ── Store failures ───────────────────────────────────────────────────


async def test_transient_failures_are_retried() -> None:
    store = FlakyStore(failures=2)
    loader = BatchLoader(store, _fast_config())

    session = await loader.load(_rows(3), "product", MAPPINGS)

    assert session.status == ImportSessionStatus.COMPLETED
    assert store.insert_calls == 5


async def test_exhausted_retries_fail_the_record() -> None:
    store = FlakyStore(failures=3)
    loader = BatchLoader(store, _fast_config())

    session = await loader.load(_rows(2), "product", MAPPINGS)

    assert session.status == ImportSessionStatus.COMPLETED_WITH_ERRORS
    assert session.failed_records == 1
    logs = await store.list_record_logs(session.id, status=RecordStatus.FAILED)
    assert logs[0].validation_errors == ["Could not persist record: database is restarting"]


async def test_unexpected_error_fails_the_batch() -> None:
    store = ExplodingStore()
    events = LifecycleQueue()
    loader = BatchLoader(store, _fast_config(batch_size=5), events)
    rows = _rows(10)
    rows[7]["title"] = "poison"

    session = await loader.load(rows, "product", MAPPINGS)

    assert session.status == ImportSessionStatus.COMPLETED_WITH_ERRORS
    assert (session.successful_records, session.failed_records) == (7, 3)
    batches = await loader.get_batches(session.id)
    assert batches[0].status == ImportBatchStatus.COMPLETED
    assert batches[1].status == ImportBatchStatus.FAILED
    assert batches[1].error_message == "constraint violated"
    failed = await store.list_record_logs(session.id, status=RecordStatus.FAILED)
    assert [log.record_index for log in failed] == [7, 8, 9]
    assert failed[0].validation_errors == ["Batch failed: constraint violated"]
    assert any(isinstance(e, BatchFailedEvent) for e in events.drain())


async def test_batch_that_cannot_start_counts_its_rows_as_failed() -> None:
    store = StalledBatchStore(batch_number=2)
    loader = BatchLoader(store, _fast_config(batch_size=5))

    session = await loader.load(_rows(10), "product", MAPPINGS)

    assert session.status == ImportSessionStatus.COMPLETED_WITH_ERRORS
    assert (session.processed_records, session.successful_records) == (10, 5)
    assert session.failed_records == 5
    batches = await loader.get_batches(session.id)
    assert [b.status for b in batches] == [ImportBatchStatus.COMPLETED, ImportBatchStatus.FAILED]
    assert batches[1].failure_count == 5
    logs = await store.list_record_logs(session.id)
    assert len(logs) == 10
    failed = await store.list_record_logs(session.id, status=RecordStatus.FAILED)
    assert [log.record_index for log in failed] == [5, 6, 7, 8, 9]
    assert failed[0].validation_errors == ["Batch failed: batch table locked"]


async def test_stored_row_with_lost_log_is_not_retried() -> None:
    store = LostLogStore(record_index=2)
    loader = BatchLoader(store, _fast_config(batch_size=5))

    session = await loader.load(_rows(5), "product", MAPPINGS)

    assert (session.successful_records, session.failed_records) == (3, 2)
    failed = await store.list_record_logs(session.id, status=RecordStatus.FAILED)
    assert [log.record_index for log in failed] == [3, 4]

    store.armed = False
    retry = await loader.retry_failed(session.id)

    assert retry is not None
    assert retry.successful_records == 2
    names = sorted(e.data["name"] for e in await store.list_entities())
    assert names == [f"Item {i}" for i in range(5)]


# ── Cancel & retry ───────────────────────────────────────────────────


async def test_cancel_pending_session(loader: BatchLoader, events: LifecycleQueue) -> None:
    session = await loader.create_session("product", MAPPINGS)

    cancelled = await loader.cancel(session.id)

    assert cancelled.status == ImportSessionStatus.CANCELLED
    assert isinstance(events.drain()[-1], CancelledEvent)
    with pytest.raises(InvalidStatusTransitionError):
        await loader.run(session.id, _rows(1))


async def test_cancel_terminal_session_raises(loader: BatchLoader) -> None:
    session = await loader.load(_rows(1), "product", MAPPINGS)
    with pytest.raises(InvalidStatusTransitionError):
        await loader.cancel(session.id)


async def test_cancel_while_running_blocks_completion() -> None:
    store = GatedStore()
    events = LifecycleQueue()
    loader = BatchLoader(store, _fast_config(max_concurrency=1), events)
    session = await loader.create_session("product", MAPPINGS)

    task = asyncio.create_task(loader.run(session.id, _rows(50)))
    await store.started.wait()
    await loader.cancel(session.id)
    store.gate.set()
    result = await task

    assert result.status == ImportSessionStatus.CANCELLED
    assert result.processed_records == 10
    batches = await loader.get_batches(session.id)
    assert batches[0].status == ImportBatchStatus.COMPLETED
    assert {b.status for b in batches[1:]} == {ImportBatchStatus.PENDING}
    emitted = events.drain()
    assert any(isinstance(e, CancelledEvent) for e in emitted)
    assert not any(isinstance(e, CompletedEvent) for e in emitted)


async def test_retry_failed_runs_only_failed_rows() -> None:
    store = FlakyStore(failures=9)
    loader = BatchLoader(store, _fast_config(persist_attempts=3))
    original = await loader.load(_rows(5), "product", MAPPINGS, file_name="items.csv")
    assert original.failed_records == 3

    retry = await loader.retry_failed(original.id)

    assert retry is not None
    assert retry.retry_of == original.id
    assert retry.file_name == "items.csv"
    assert retry.total_records == 3
    assert retry.status == ImportSessionStatus.COMPLETED
    assert len(await store.list_entities()) == 5


async def test_retry_without_failures_returns_none(loader: BatchLoader) -> None:
    session = await loader.load(_rows(3), "product", MAPPINGS)
    assert await loader.retry_failed(session.id) is None
