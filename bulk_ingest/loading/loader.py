from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bulk_ingest.exceptions import (
    InvalidStatusTransitionError,
    MappingError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from bulk_ingest.loading.events import (
    BatchCompletedEvent,
    BatchFailedEvent,
    CancelledEvent,
    CompletedEvent,
    ErrorEvent,
    LifecycleEvent,
    LifecycleQueue,
)
from bulk_ingest.loading.metrics import SessionMetrics
from bulk_ingest.loading.validation import supported_entity_types, validate
from bulk_ingest.models import (
    EntityRecord,
    FieldMapping,
    ImportBatch,
    ImportBatchStatus,
    ImportRecordLog,
    ImportSession,
    ImportSessionStatus,
    RecordStatus,
)
from bulk_ingest.models.utils import utcnow
from bulk_ingest.store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

Row = dict[str, Any]


class UnloggedRecordError(Exception):
    """A row was stored but its audit log entry could not be written."""

    def __init__(self, record_index: int, entity_id: str, reason: str):
        self.record_index = record_index
        self.entity_id = entity_id
        super().__init__(
            f"Record {record_index} stored as {entity_id} but not logged: {reason}"
        )


@dataclass
class LoaderConfig:
    batch_size: int = 100
    max_concurrency: int = 5
    persist_attempts: int = 3
    progress_interval: int = 10
    retry_initial_wait: float = 0.1
    retry_max_wait: float = 2.0


def check_mappings(mappings: Sequence[FieldMapping], entity_type: str) -> None:
    """Raise :class:`MappingError` for a mapping set the loader cannot apply."""
    if entity_type not in supported_entity_types():
        raise MappingError(
            f"Unknown entity type '{entity_type}'. Available: {supported_entity_types()}"
        )
    if not mappings:
        raise MappingError("No field mappings supplied")
    seen: set[str] = set()
    for mapping in mappings:
        if not mapping.source_field.strip() or not mapping.target_field.strip():
            raise MappingError(
                f"Blank field name in mapping {mapping.source_field!r} -> {mapping.target_field!r}"
            )
        if mapping.target_field in seen:
            raise MappingError(f"Target field '{mapping.target_field}' is mapped more than once")
        seen.add(mapping.target_field)


def apply_mapping(row: Row, mappings: Sequence[FieldMapping]) -> Row:
    """Copy mapped source fields onto their targets; everything else is dropped."""
    return {m.target_field: row[m.source_field] for m in mappings if m.source_field in row}


def partition(session_id: str, total: int, batch_size: int) -> list[ImportBatch]:
    return [
        ImportBatch(
            session_id=session_id,
            batch_number=number + 1,
            start_index=number * batch_size,
            end_index=min((number + 1) * batch_size, total),
        )
        for number in range(math.ceil(total / batch_size))
    ]


class BatchLoader:
    """Loads mapped rows into the store in concurrent fixed-size batches.

    Usage::

        loader = BatchLoader(store)
        session = await loader.create_session("product", mappings)
        session = await loader.run(session.id, rows)

    At most ``max_concurrency`` batches run at once; records inside a
    batch are processed in order. Lifecycle events go to :attr:`events`.

    One instance owns the per-session metrics, so a session id can only
    be run once at a time through it.
    """

    def __init__(
        self,
        store: Store,
        config: LoaderConfig | None = None,
        events: LifecycleQueue | None = None,
    ) -> None:
        self._store = store
        self._config = config or LoaderConfig()
        self._events = events or LifecycleQueue()
        self._metrics: dict[str, SessionMetrics] = {}
        self._active: set[str] = set()
        self._cancelled: set[str] = set()
        self._session_lock = asyncio.Lock()

    @property
    def config(self) -> LoaderConfig:
        return self._config

    @property
    def events(self) -> LifecycleQueue:
        return self._events

    # ── Public API ───────────────────────────────────────────────────

    async def create_session(
        self,
        entity_type: str,
        mappings: Sequence[FieldMapping],
        *,
        total_records: int = 0,
        file_name: str | None = None,
        retry_of: str | None = None,
    ) -> ImportSession:
        session = ImportSession(
            entity_type=str(entity_type),
            total_records=total_records,
            field_mappings=list(mappings),
            file_name=file_name,
            retry_of=retry_of,
        )
        await self._persist(self._store.create_session, session)
        logger.info("Created import session %s (%s)", session.id, session.entity_type)
        return session

    async def load(
        self,
        rows: Sequence[Row],
        entity_type: str,
        mappings: Sequence[FieldMapping],
        *,
        file_name: str | None = None,
    ) -> ImportSession:
        session = await self.create_session(
            entity_type, mappings, total_records=len(rows), file_name=file_name
        )
        return await self.run(session.id, rows)

    async def run(
        self,
        session_id: str,
        rows: Sequence[Row],
        mappings: Sequence[FieldMapping] | None = None,
    ) -> ImportSession:
        """Process *rows* for an existing pending session and return its final state."""
        if session_id in self._active:
            raise SessionAlreadyActiveError(session_id)
        self._active.add(session_id)
        try:
            session = await self._get_session(session_id)
            if not session.can_transition_to(ImportSessionStatus.PROCESSING):
                raise InvalidStatusTransitionError(
                    session_id, session.status, ImportSessionStatus.PROCESSING.value
                )
            if mappings is not None:
                session.field_mappings = list(mappings)
            try:
                check_mappings(session.field_mappings, session.entity_type)
            except MappingError as exc:
                return await self._fail_session(session, exc.message)
            return await self._run_batches(session, rows)
        finally:
            self._active.discard(session_id)
            self._cancelled.discard(session_id)
            self._metrics.pop(session_id, None)

    async def cancel(self, session_id: str) -> ImportSession:
        """Force *session_id* to ``cancelled``.

        Batches already running finish; batches not yet started are skipped.
        """
        async with self._session_lock:
            session = await self._get_session(session_id)
            session.transition(ImportSessionStatus.CANCELLED)
            await self._persist(self._store.update_session, session)
        if session_id in self._active:
            self._cancelled.add(session_id)
        self._metrics.pop(session_id, None)
        self._emit(CancelledEvent(session_id=session_id))
        logger.info("Cancelled import session %s", session_id)
        return session

    async def retry_failed(self, session_id: str) -> ImportSession | None:
        """Re-run the failed rows of *session_id* as a new session.

        Returns ``None`` when nothing failed.
        """
        original = await self._get_session(session_id)
        if session_id in self._active:
            raise SessionAlreadyActiveError(session_id)
        failed = await self._store.list_record_logs(session_id, status=RecordStatus.FAILED)
        if not failed:
            logger.info("Session %s has no failed records to retry", session_id)
            return None

        rows = [log.record_data for log in failed]
        retry = await self.create_session(
            original.entity_type,
            original.field_mappings,
            total_records=len(rows),
            file_name=original.file_name,
            retry_of=original.id,
        )
        logger.info("Retrying %d failed records of %s as %s", len(rows), session_id, retry.id)
        return await self.run(retry.id, rows)

    def get_metrics(self, session_id: str) -> SessionMetrics | None:
        return self._metrics.get(session_id)

    async def get_batches(self, session_id: str) -> list[ImportBatch]:
        return await self._store.list_batches(session_id)

    # ── Session flow ─────────────────────────────────────────────────

    async def _get_session(self, session_id: str) -> ImportSession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _run_batches(self, session: ImportSession, rows: Sequence[Row]) -> ImportSession:
        metrics = SessionMetrics(session_id=session.id, total_records=len(rows))
        self._metrics[session.id] = metrics
        batches = partition(session.id, len(rows), self._config.batch_size)
        try:
            async with self._session_lock:
                # Re-read: a cancel may have landed since run() fetched it.
                current = await self._get_session(session.id)
                current.field_mappings = session.field_mappings
                current.total_records = len(rows)
                current.transition(ImportSessionStatus.PROCESSING)
                await self._persist(self._store.update_session, current)
                session = current
            await self._persist(self._store.create_batches, batches)
        except StoreUnavailableError as exc:
            logger.exception("Could not start session %s", session.id)
            return await self._fail_session(session, exc.message)

        logger.info(
            "Session %s: %d records in %d batches (concurrency %d)",
            session.id,
            len(rows),
            len(batches),
            self._config.max_concurrency,
        )
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        tasks = [
            asyncio.create_task(self._process_batch(session, batch, rows, metrics, semaphore))
            for batch in batches
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for batch, result in zip(batches, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Batch %d of session %s could not be recorded: %s",
                    batch.batch_number,
                    session.id,
                    result,
                )
        return await self._finalize(session.id, metrics)

    async def _fail_session(self, session: ImportSession, message: str) -> ImportSession:
        async with self._session_lock:
            session = await self._get_session(session.id)
            if not session.can_transition_to(ImportSessionStatus.FAILED):
                return session
            session.error_message = message
            session.transition(ImportSessionStatus.FAILED)
            await self._persist(self._store.update_session, session)
        self._emit(ErrorEvent(session_id=session.id, error=message))
        logger.warning("Session %s failed before batching: %s", session.id, message)
        return session

    async def _sync_counters(self, session_id: str, metrics: SessionMetrics) -> ImportSession:
        """Write aggregate counters; the stored status is left as is."""
        async with self._session_lock:
            session = await self._get_session(session_id)
            session.processed_records = metrics.processed_records
            session.successful_records = metrics.successful_records
            session.failed_records = metrics.failed_records
            session.processing_rate = round(metrics.throughput, 2)
            session.estimated_time_remaining = metrics.estimated_time_remaining
            session.updated_at = utcnow()
            await self._persist(self._store.update_session, session)
            return session

    async def _finalize(self, session_id: str, metrics: SessionMetrics) -> ImportSession:
        session = await self._sync_counters(session_id, metrics)
        if session.is_terminal:
            # Cancelled while running: keep the counters, not the status.
            logger.info("Session %s finished after reaching %s", session_id, session.status)
            return session

        async with self._session_lock:
            session.estimated_time_remaining = 0
            session.transition(
                ImportSessionStatus.COMPLETED
                if metrics.failed_records == 0
                else ImportSessionStatus.COMPLETED_WITH_ERRORS
            )
            await self._persist(self._store.update_session, session)

        self._emit(
            CompletedEvent(
                session_id=session_id,
                status=session.status,
                total_records=metrics.total_records,
                successful_records=metrics.successful_records,
                failed_records=metrics.failed_records,
                duration_ms=metrics.elapsed_seconds * 1000,
            )
        )
        logger.info(
            "Session %s %s: %d ok, %d failed",
            session_id,
            session.status,
            metrics.successful_records,
            metrics.failed_records,
        )
        return session

    # ── Batches ──────────────────────────────────────────────────────

    async def _process_batch(
        self,
        session: ImportSession,
        batch: ImportBatch,
        rows: Sequence[Row],
        metrics: SessionMetrics,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if session.id in self._cancelled:
                logger.info(
                    "Skipping batch %d of cancelled session %s", batch.batch_number, session.id
                )
                return

            started = time.perf_counter()
            index = batch.start_index
            try:
                batch.status = ImportBatchStatus.PROCESSING
                batch.started_at = utcnow()
                await self._persist(self._store.update_batch, batch)
                for index in range(batch.start_index, batch.end_index):
                    success = await self._process_record(session, index, rows[index])
                    if success:
                        batch.success_count += 1
                    else:
                        batch.failure_count += 1
                    metrics.record(success)
                    if metrics.processed_records % self._config.progress_interval == 0:
                        self._emit_progress(session.id, metrics)
                batch.status = ImportBatchStatus.COMPLETED
            except Exception as exc:
                logger.exception("Batch %d of session %s failed", batch.batch_number, session.id)
                if isinstance(exc, UnloggedRecordError):
                    # The row is stored; only its audit entry is missing.
                    batch.success_count += 1
                    metrics.record(True)
                    index += 1
                remaining = batch.end_index - index
                batch.failure_count += remaining
                metrics.record_failures(remaining)
                batch.status = ImportBatchStatus.FAILED
                batch.error_message = str(exc)
                await self._log_unattempted(session, rows, index, batch.end_index, str(exc))

            batch.processing_time_ms = (time.perf_counter() - started) * 1000
            batch.completed_at = utcnow()
            await self._persist(self._store.update_batch, batch)
            await self._sync_counters(session.id, metrics)

        if batch.status == ImportBatchStatus.COMPLETED:
            self._emit(
                BatchCompletedEvent(
                    session_id=session.id,
                    batch_number=batch.batch_number,
                    success_count=batch.success_count,
                    failure_count=batch.failure_count,
                    processing_time_ms=batch.processing_time_ms,
                )
            )
        else:
            self._emit(
                BatchFailedEvent(
                    session_id=session.id,
                    batch_number=batch.batch_number,
                    error=batch.error_message or "Batch failed",
                )
            )
        self._emit_progress(session.id, metrics)

    async def _log_unattempted(
        self, session: ImportSession, rows: Sequence[Row], start: int, end: int, error: str
    ) -> None:
        for index in range(start, end):
            try:
                await self._persist(
                    self._store.add_record_log,
                    ImportRecordLog(
                        session_id=session.id,
                        record_index=index,
                        status=RecordStatus.FAILED,
                        entity_type=session.entity_type,
                        record_data=dict(rows[index]),
                        validation_errors=[f"Batch failed: {error}"],
                        suggestion="Retry the failed records",
                    ),
                )
            except StoreUnavailableError:
                logger.warning(
                    "Could not log %d unattempted records of session %s",
                    end - index,
                    session.id,
                )
                return

    # ── Records ──────────────────────────────────────────────────────

    async def _process_record(self, session: ImportSession, index: int, row: Row) -> bool:
        """Validate and persist one row, writing its audit log. Returns success."""
        outcome = validate(session.entity_type, apply_mapping(row, session.field_mappings))
        log = ImportRecordLog(
            session_id=session.id,
            record_index=index,
            status=RecordStatus.FAILED,
            entity_type=session.entity_type,
            record_data=dict(row),
            validation_errors=list(outcome.errors),
            warnings=list(outcome.warnings),
            auto_fixable=outcome.auto_fixable,
            suggestion=outcome.suggestion,
        )
        if outcome.valid:
            try:
                log.entity_id = await self._persist(
                    self._store.insert_entity,
                    EntityRecord(
                        entity_type=session.entity_type,
                        data=outcome.record,
                        session_id=session.id,
                    ),
                )
                log.status = RecordStatus.SUCCESS
            except StoreUnavailableError as exc:
                log.validation_errors.append(f"Could not persist record: {exc.message}")
                log.suggestion = "Retry the failed records"

        if outcome.warnings:
            logger.debug("Record %d of %s fixed: %s", index, session.id, outcome.warnings)
        try:
            await self._persist(self._store.add_record_log, log)
        except StoreUnavailableError as exc:
            if log.entity_id is None:
                raise
            raise UnloggedRecordError(index, log.entity_id, exc.message) from exc
        return log.status == RecordStatus.SUCCESS

    # ── Plumbing ─────────────────────────────────────────────────────

    async def _persist(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a store call, retrying transient outages with backoff."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(self._config.persist_attempts),
            wait=wait_exponential_jitter(
                initial=self._config.retry_initial_wait,
                max=self._config.retry_max_wait,
                jitter=self._config.retry_initial_wait,
            ),
            reraise=True,
        )
        return await retrying(operation, *args)

    def _emit(self, event: LifecycleEvent) -> None:
        if not self._events.accepting:
            logger.debug("Dropping %s event for %s: no listener", event.type, event.session_id)
            return
        self._events.put(event)

    def _emit_progress(self, session_id: str, metrics: SessionMetrics) -> None:
        if session_id in self._cancelled:
            return
        self._emit(metrics.progress_event())
