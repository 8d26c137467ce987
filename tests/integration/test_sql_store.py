from __future__ import annotations

from datetime import timedelta

import pytest

from bulk_ingest import BulkIngest
from bulk_ingest.loading import BatchLoader, LoaderConfig, partition
from bulk_ingest.models import (
    EntityRecord,
    FieldMapping,
    ImportBatchStatus,
    ImportRecordLog,
    ImportSession,
    ImportSessionStatus,
    LearnedPattern,
    RecordStatus,
)
from bulk_ingest.models.utils import utcnow
from bulk_ingest.store.sql import SqliteStore


# ── Sessions ─────────────────────────────────────────────────────────


async def test_session_round_trip(sql_store: SqliteStore) -> None:
    session = ImportSession(
        entity_type="product",
        total_records=2,
        field_mappings=[FieldMapping("Title", "name", 88.0, "suggested")],
        file_name="items.csv",
    )
    await sql_store.create_session(session)

    fetched = await sql_store.get_session(session.id)

    assert fetched is not None
    assert fetched.field_mappings == session.field_mappings
    assert fetched.created_at.tzinfo is not None
    assert fetched.completed_at is None


async def test_update_and_filter_sessions(sql_store: SqliteStore) -> None:
    session = ImportSession(entity_type="brand")
    await sql_store.create_session(session)
    await sql_store.create_session(ImportSession(entity_type="brand"))

    session.transition(ImportSessionStatus.PROCESSING)
    session.processed_records = 3
    await sql_store.update_session(session)

    processing = await sql_store.list_sessions(status=ImportSessionStatus.PROCESSING)
    assert [s.id for s in processing] == [session.id]
    assert processing[0].processed_records == 3
    assert len(await sql_store.list_sessions()) == 2


async def test_missing_session(sql_store: SqliteStore) -> None:
    assert await sql_store.get_session("nope") is None


# ── Batches, logs, entities ──────────────────────────────────────────


async def test_batches_and_logs(sql_store: SqliteStore) -> None:
    session = ImportSession(entity_type="product", total_records=25)
    await sql_store.create_session(session)
    batches = partition(session.id, 25, 10)
    await sql_store.create_batches(batches)

    batches[2].status = ImportBatchStatus.COMPLETED.value
    batches[2].success_count = 5
    batches[2].completed_at = utcnow()
    await sql_store.update_batch(batches[2])

    listed = await sql_store.list_batches(session.id)
    assert [b.batch_number for b in listed] == [1, 2, 3]
    assert listed[2].status == ImportBatchStatus.COMPLETED
    assert listed[2].success_count == 5
    assert listed[2].completed_at is not None

    for index, status in [(1, RecordStatus.FAILED), (0, RecordStatus.SUCCESS)]:
        await sql_store.add_record_log(
            ImportRecordLog(
                session_id=session.id,
                record_index=index,
                status=status,
                entity_type="product",
                record_data={"title": f"row {index}"},
                validation_errors=["Product name is required"] if status == "failed" else [],
            )
        )
    logs = await sql_store.list_record_logs(session.id)
    assert [log.record_index for log in logs] == [0, 1]
    failed = await sql_store.list_record_logs(session.id, status=RecordStatus.FAILED)
    assert failed[0].record_data == {"title": "row 1"}
    assert failed[0].validation_errors == ["Product name is required"]


async def test_entities(sql_store: SqliteStore) -> None:
    await sql_store.insert_entity(EntityRecord(entity_type="brand", data={"name": "Acme"}))
    await sql_store.insert_entity(EntityRecord(entity_type="product", data={"price": 500}))

    products = await sql_store.list_entities(entity_type="product")
    assert [p.data for p in products] == [{"price": 500}]


# ── Patterns ─────────────────────────────────────────────────────────


async def test_upsert_pattern(sql_store: SqliteStore) -> None:
    first = await sql_store.upsert_pattern(
        LearnedPattern("price", "price", 80, metadata={"strategies": ["manual"]})
    )
    second = await sql_store.upsert_pattern(
        LearnedPattern("price", "cost", 90, usage_count=2, success_rate=85)
    )

    assert second.id == first.id
    assert second.target_field == "cost"
    assert second.usage_count == 2
    assert second.metadata == {}
    assert len(await sql_store.list_patterns()) == 1


async def test_pattern_queries(sql_store: SqliteStore) -> None:
    for source, target, usage in [
        ("product_name", "name", 5),
        ("product_price", "price", 9),
        ("brand", "brand", 3),
        ("100%_off", "discount", 4),
    ]:
        await sql_store.upsert_pattern(
            LearnedPattern(source, target, 90, usage_count=usage, success_rate=90)
        )

    frequent = await sql_store.list_patterns(min_usage=3, min_success_rate=70)
    assert [p.source_pattern for p in frequent] == ["product_price", "product_name", "100%_off"]

    found = await sql_store.search_patterns("product", min_usage=5)
    assert [p.source_pattern for p in found] == ["product_price"]

    literal = await sql_store.search_patterns("%")
    assert [p.source_pattern for p in literal] == ["100%_off"]


async def test_delete_stale_patterns(sql_store: SqliteStore) -> None:
    old = utcnow() - timedelta(days=120)
    await sql_store.upsert_pattern(LearnedPattern("stale", "x", 50, last_used_at=old))
    await sql_store.upsert_pattern(LearnedPattern("fresh", "x", 50))

    removed = await sql_store.delete_patterns(
        last_used_before=utcnow() - timedelta(days=90), usage_below=3
    )

    assert removed == 1
    assert await sql_store.get_pattern("stale") is None


# ── End to end ───────────────────────────────────────────────────────


async def test_loader_against_sqlite(sql_store: SqliteStore) -> None:
    loader = BatchLoader(
        sql_store,
        LoaderConfig(batch_size=4, max_concurrency=1, retry_initial_wait=0, retry_max_wait=0),
    )
    rows = [{"title": f"Item {i}", "cost": "1.00"} for i in range(9)]
    rows[4]["title"] = ""
    mappings = [FieldMapping("title", "name"), FieldMapping("cost", "price")]

    session = await loader.load(rows, "product", mappings)

    assert session.status == ImportSessionStatus.COMPLETED_WITH_ERRORS
    assert (session.successful_records, session.failed_records) == (8, 1)
    assert len(await sql_store.list_batches(session.id)) == 3
    assert len(await sql_store.list_entities()) == 8


@pytest.mark.parametrize("learn", [True, False])
async def test_facade_with_sqlite(learn: bool) -> None:
    config = {
        "store": {"provider": "sqlite", "config": {"path": ":memory:"}},
        "loading": {"max_concurrency": 1, "retry_initial_wait": 0, "retry_max_wait": 0},
        "progress": {"heartbeat_interval": 3600},
    }
    async with BulkIngest.from_config(config) as ingest:
        result = await ingest.import_file(
            b"name,price\nHat,12.00\nCap,9.50\n",
            "hats.csv",
            "product",
            [FieldMapping("name", "name"), FieldMapping("price", "price")],
            learn=learn,
        )
        assert result.session.status == ImportSessionStatus.COMPLETED
        patterns = await ingest.store.list_patterns()
        assert bool(patterns) is learn
