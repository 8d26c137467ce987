from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bulk_ingest.exceptions import StoreUnavailableError
from bulk_ingest.models import (
    EntityRecord,
    FieldMapping,
    ImportBatch,
    ImportRecordLog,
    ImportSession,
    LearnedPattern,
)
from bulk_ingest.store.base import Store
from bulk_ingest.store.orm import (
    Base,
    EntityRow,
    ImportBatchRow,
    ImportRecordLogRow,
    ImportSessionRow,
    LearnedPatternRow,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SqlStore(Store):
    """Store backed by any SQLAlchemy async engine.

    Wraps the ORM rows in :mod:`bulk_ingest.store.orm` and translates
    to/from domain dataclasses at the boundary.  Connection-level
    failures are re-raised as :class:`StoreUnavailableError`.
    """

    def __init__(self, url: str, *, echo: bool = False, **engine_kwargs: Any) -> None:
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection, otherwise every session sees an empty DB.
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self._url = url
        self._engine = create_async_engine(url, echo=echo, **engine_kwargs)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self._scoped_session: AsyncSession | None = None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SqlStore:
        return cls(config["url"], echo=bool(config.get("echo", False)))

    @asynccontextmanager
    async def _auto_session(self) -> AsyncIterator[AsyncSession]:
        """Yield the scoped session if inside ``atomic()``, else a fresh
        auto-committing session that is closed after use."""
        if self._scoped_session is not None:
            yield self._scoped_session
            return
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except (OperationalError, InterfaceError) as exc:
            await session.rollback()
            raise StoreUnavailableError(str(exc.orig or exc)) from exc
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def reset(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await self.init()

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        session = self._session_factory()
        self._scoped_session = session
        try:
            yield
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            self._scoped_session = None
            await session.close()

    # ── Import sessions ──────────────────────────────────────────────

    async def create_session(self, session: ImportSession) -> ImportSession:
        async with self._auto_session() as db:
            db.add(_session_to_row(session))
            await db.flush()
        return session

    async def get_session(self, session_id: str) -> ImportSession | None:
        async with self._auto_session() as db:
            row = await db.get(ImportSessionRow, session_id)
            return _session_from_row(row) if row is not None else None

    async def update_session(self, session: ImportSession) -> None:
        async with self._auto_session() as db:
            await db.merge(_session_to_row(session))
            await db.flush()

    async def list_sessions(
        self, *, status: str | None = None
    ) -> list[ImportSession]:
        stmt = select(ImportSessionRow).order_by(ImportSessionRow.created_at)
        if status is not None:
            stmt = stmt.where(ImportSessionRow.status == status)
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_session_from_row(r) for r in rows]

    # ── Import batches ───────────────────────────────────────────────

    async def create_batches(self, batches: list[ImportBatch]) -> list[ImportBatch]:
        async with self._auto_session() as db:
            db.add_all([_batch_to_row(b) for b in batches])
            await db.flush()
        return batches

    async def update_batch(self, batch: ImportBatch) -> None:
        stmt = (
            update(ImportBatchRow)
            .where(
                ImportBatchRow.session_id == batch.session_id,
                ImportBatchRow.batch_number == batch.batch_number,
            )
            .values(
                status=batch.status,
                success_count=batch.success_count,
                failure_count=batch.failure_count,
                processing_time_ms=batch.processing_time_ms,
                error_message=batch.error_message,
                started_at=batch.started_at,
                completed_at=batch.completed_at,
            )
        )
        async with self._auto_session() as db:
            await db.execute(stmt)

    async def list_batches(self, session_id: str) -> list[ImportBatch]:
        stmt = (
            select(ImportBatchRow)
            .where(ImportBatchRow.session_id == session_id)
            .order_by(ImportBatchRow.batch_number)
        )
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_batch_from_row(r) for r in rows]

    # ── Record logs ──────────────────────────────────────────────────

    async def add_record_log(self, log: ImportRecordLog) -> ImportRecordLog:
        async with self._auto_session() as db:
            db.add(
                ImportRecordLogRow(
                    id=log.id,
                    session_id=log.session_id,
                    record_index=log.record_index,
                    status=log.status,
                    entity_type=log.entity_type,
                    record_data=log.record_data,
                    entity_id=log.entity_id,
                    validation_errors=list(log.validation_errors),
                    warnings=list(log.warnings),
                    auto_fixable=log.auto_fixable,
                    suggestion=log.suggestion,
                    created_at=log.created_at,
                )
            )
            await db.flush()
        return log

    async def list_record_logs(
        self,
        session_id: str,
        *,
        status: str | None = None,
    ) -> list[ImportRecordLog]:
        stmt = (
            select(ImportRecordLogRow)
            .where(ImportRecordLogRow.session_id == session_id)
            .order_by(ImportRecordLogRow.record_index)
        )
        if status is not None:
            stmt = stmt.where(ImportRecordLogRow.status == status)
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [
                ImportRecordLog(
                    id=r.id,
                    session_id=r.session_id,
                    record_index=r.record_index,
                    status=r.status,
                    entity_type=r.entity_type,
                    record_data=dict(r.record_data),
                    entity_id=r.entity_id,
                    validation_errors=list(r.validation_errors),
                    warnings=list(r.warnings),
                    auto_fixable=r.auto_fixable,
                    suggestion=r.suggestion,
                    created_at=_aware(r.created_at),
                )
                for r in rows
            ]

    # ── Entities ─────────────────────────────────────────────────────

    async def insert_entity(self, record: EntityRecord) -> str:
        async with self._auto_session() as db:
            db.add(
                EntityRow(
                    id=record.id,
                    entity_type=record.entity_type,
                    session_id=record.session_id,
                    data=record.data,
                    created_at=record.created_at,
                )
            )
            await db.flush()
        return record.id

    async def list_entities(
        self, *, entity_type: str | None = None
    ) -> list[EntityRecord]:
        stmt = select(EntityRow).order_by(EntityRow.created_at)
        if entity_type is not None:
            stmt = stmt.where(EntityRow.entity_type == entity_type)
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [
                EntityRecord(
                    id=r.id,
                    entity_type=r.entity_type,
                    session_id=r.session_id,
                    data=dict(r.data),
                    created_at=_aware(r.created_at),
                )
                for r in rows
            ]

    # ── Learned patterns ─────────────────────────────────────────────

    async def get_pattern(self, source_pattern: str) -> LearnedPattern | None:
        stmt = select(LearnedPatternRow).where(
            LearnedPatternRow.source_pattern == source_pattern
        )
        async with self._auto_session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _pattern_from_row(row) if row is not None else None

    async def upsert_pattern(self, pattern: LearnedPattern) -> LearnedPattern:
        insert = pg_insert if self._engine.dialect.name == "postgresql" else sqlite_insert
        values = {
            "id": pattern.id,
            "source_pattern": pattern.source_pattern,
            "target_field": pattern.target_field,
            "confidence": pattern.confidence,
            "usage_count": pattern.usage_count,
            "success_rate": pattern.success_rate,
            "strategy": pattern.strategy,
            "metadata": pattern.metadata,
            "created_at": pattern.created_at,
            "last_used_at": pattern.last_used_at,
        }
        stmt = insert(LearnedPatternRow.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_pattern"],
            set_={
                key: stmt.excluded[key]
                for key in values
                if key not in ("id", "source_pattern", "created_at")
            },
        )
        async with self._auto_session() as db:
            await db.execute(stmt)
            row = (
                await db.execute(
                    select(LearnedPatternRow).where(
                        LearnedPatternRow.source_pattern == pattern.source_pattern
                    )
                )
            ).scalar_one()
            return _pattern_from_row(row)

    async def list_patterns(
        self,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
    ) -> list[LearnedPattern]:
        stmt = select(LearnedPatternRow).order_by(LearnedPatternRow.usage_count.desc())
        if min_usage is not None:
            stmt = stmt.where(LearnedPatternRow.usage_count > min_usage)
        if min_success_rate is not None:
            stmt = stmt.where(LearnedPatternRow.success_rate > min_success_rate)
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_pattern_from_row(r) for r in rows]

    async def search_patterns(
        self,
        fragment: str,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
        limit: int = 10,
    ) -> list[LearnedPattern]:
        stmt = (
            select(LearnedPatternRow)
            .where(LearnedPatternRow.source_pattern.contains(fragment, autoescape=True))
            .order_by(LearnedPatternRow.usage_count.desc())
            .limit(limit)
        )
        if min_usage is not None:
            stmt = stmt.where(LearnedPatternRow.usage_count > min_usage)
        if min_success_rate is not None:
            stmt = stmt.where(LearnedPatternRow.success_rate > min_success_rate)
        async with self._auto_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_pattern_from_row(r) for r in rows]

    async def delete_patterns(
        self,
        *,
        last_used_before: datetime,
        usage_below: int,
    ) -> int:
        stmt = delete(LearnedPatternRow).where(
            LearnedPatternRow.last_used_at < last_used_before,
            LearnedPatternRow.usage_count < usage_below,
        )
        async with self._auto_session() as db:
            result = await db.execute(stmt)
            removed = result.rowcount or 0
        logger.info("Deleted %d stale learned patterns", removed)
        return removed


class SqliteStore(SqlStore):
    """SQLite via aiosqlite; ``:memory:`` by default."""

    def __init__(self, path: str = ":memory:", *, echo: bool = False) -> None:
        super().__init__(f"sqlite+aiosqlite:///{path}", echo=echo)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SqliteStore:
        return cls(config.get("path", ":memory:"), echo=bool(config.get("echo", False)))


class PostgresStore(SqlStore):
    """PostgreSQL via asyncpg."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 20,
    ) -> None:
        super().__init__(
            f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{database}",
            pool_size=pool_size,
            max_overflow=max_overflow,
        )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PostgresStore:
        return cls(
            host=config.get("host", "localhost"),
            port=int(config.get("port", 5432)),
            database=config.get("database", "bulk_ingest"),
            user=config.get("user", "postgres"),
            password=config.get("password", "postgres"),
            pool_size=int(config.get("pool_size", 10)),
            max_overflow=int(config.get("max_overflow", 20)),
        )


# ── Row <-> domain translation ──────────────────────────────────────


def _session_to_row(session: ImportSession) -> ImportSessionRow:
    return ImportSessionRow(
        id=session.id,
        entity_type=session.entity_type,
        status=session.status,
        total_records=session.total_records,
        processed_records=session.processed_records,
        successful_records=session.successful_records,
        failed_records=session.failed_records,
        processing_rate=session.processing_rate,
        estimated_time_remaining=session.estimated_time_remaining,
        field_mappings=[m.to_dict() for m in session.field_mappings],
        file_name=session.file_name,
        error_message=session.error_message,
        retry_of=session.retry_of,
        created_at=session.created_at,
        updated_at=session.updated_at,
        completed_at=session.completed_at,
    )


def _session_from_row(row: ImportSessionRow) -> ImportSession:
    return ImportSession(
        id=row.id,
        entity_type=row.entity_type,
        status=row.status,
        total_records=row.total_records,
        processed_records=row.processed_records,
        successful_records=row.successful_records,
        failed_records=row.failed_records,
        processing_rate=row.processing_rate,
        estimated_time_remaining=row.estimated_time_remaining,
        field_mappings=[FieldMapping.from_dict(m) for m in row.field_mappings or []],
        file_name=row.file_name,
        error_message=row.error_message,
        retry_of=row.retry_of,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        completed_at=_aware(row.completed_at),
    )


def _batch_to_row(batch: ImportBatch) -> ImportBatchRow:
    return ImportBatchRow(
        id=batch.id,
        session_id=batch.session_id,
        batch_number=batch.batch_number,
        start_index=batch.start_index,
        end_index=batch.end_index,
        status=batch.status,
        success_count=batch.success_count,
        failure_count=batch.failure_count,
        processing_time_ms=batch.processing_time_ms,
        error_message=batch.error_message,
        started_at=batch.started_at,
        completed_at=batch.completed_at,
    )


def _batch_from_row(row: ImportBatchRow) -> ImportBatch:
    return ImportBatch(
        id=row.id,
        session_id=row.session_id,
        batch_number=row.batch_number,
        start_index=row.start_index,
        end_index=row.end_index,
        status=row.status,
        success_count=row.success_count,
        failure_count=row.failure_count,
        processing_time_ms=row.processing_time_ms,
        error_message=row.error_message,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _pattern_from_row(row: LearnedPatternRow) -> LearnedPattern:
    return LearnedPattern(
        id=row.id,
        source_pattern=row.source_pattern,
        target_field=row.target_field,
        confidence=row.confidence,
        usage_count=row.usage_count,
        success_rate=row.success_rate,
        strategy=row.strategy,
        metadata=dict(row.meta or {}),
        created_at=_aware(row.created_at),
        last_used_at=_aware(row.last_used_at),
    )
