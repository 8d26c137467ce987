from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from types import TracebackType

from bulk_ingest.models import (
    EntityRecord,
    ImportBatch,
    ImportRecordLog,
    ImportSession,
    LearnedPattern,
)


class Store(ABC):
    """Abstract store for every bulk_ingest domain entity.

    Implementations must override every ``@abstractmethod``.
    The default ``atomic()`` is a no-op suitable for in-memory stores;
    database-backed stores should override it to provide a transactional
    boundary.

    Storage outages should surface as
    :class:`~bulk_ingest.exceptions.StoreUnavailableError` so that callers
    can tell them apart from programming errors and retry.
    """

    # ── Lifecycle ────────────────────────────────────────────────────

    @abstractmethod
    async def init(self) -> None:
        """Create tables / indices (idempotent)."""
        ...

    @abstractmethod
    async def reset(self) -> None:
        """Drop all data and recreate from scratch."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release any held resources (connections, file handles)."""
        ...

    async def __aenter__(self) -> Store:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Wrap multiple operations in a single commit.

        The default implementation is a no-op (each operation is
        auto-committed).  Database-backed stores override this to open
        a session, yield, then commit-or-rollback.
        """
        yield

    # ── Import sessions ──────────────────────────────────────────────

    @abstractmethod
    async def create_session(self, session: ImportSession) -> ImportSession: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> ImportSession | None: ...

    @abstractmethod
    async def update_session(self, session: ImportSession) -> None: ...

    @abstractmethod
    async def list_sessions(
        self, *, status: str | None = None
    ) -> list[ImportSession]:
        """Return sessions ordered by ``created_at``."""
        ...

    # ── Import batches ───────────────────────────────────────────────

    @abstractmethod
    async def create_batches(self, batches: list[ImportBatch]) -> list[ImportBatch]: ...

    @abstractmethod
    async def update_batch(self, batch: ImportBatch) -> None: ...

    @abstractmethod
    async def list_batches(self, session_id: str) -> list[ImportBatch]:
        """Return a session's batches ordered by ``batch_number``."""
        ...

    # ── Record logs ──────────────────────────────────────────────────

    @abstractmethod
    async def add_record_log(self, log: ImportRecordLog) -> ImportRecordLog: ...

    @abstractmethod
    async def list_record_logs(
        self,
        session_id: str,
        *,
        status: str | None = None,
    ) -> list[ImportRecordLog]:
        """Return a session's record logs ordered by ``record_index``."""
        ...

    # ── Entities ─────────────────────────────────────────────────────

    @abstractmethod
    async def insert_entity(self, record: EntityRecord) -> str:
        """Persist *record* and return its id."""
        ...

    @abstractmethod
    async def list_entities(
        self, *, entity_type: str | None = None
    ) -> list[EntityRecord]: ...

    # ── Learned patterns ─────────────────────────────────────────────

    @abstractmethod
    async def get_pattern(self, source_pattern: str) -> LearnedPattern | None: ...

    @abstractmethod
    async def upsert_pattern(self, pattern: LearnedPattern) -> LearnedPattern:
        """Insert or replace the pattern keyed by ``source_pattern``."""
        ...

    @abstractmethod
    async def list_patterns(
        self,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
    ) -> list[LearnedPattern]:
        """Return patterns strictly above the given floors, most used first."""
        ...

    @abstractmethod
    async def search_patterns(
        self,
        fragment: str,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
        limit: int = 10,
    ) -> list[LearnedPattern]:
        """Return patterns whose key contains *fragment*, above the floors, most used first."""
        ...

    @abstractmethod
    async def delete_patterns(
        self,
        *,
        last_used_before: datetime,
        usage_below: int,
    ) -> int:
        """Delete stale, rarely used patterns. Returns the number removed."""
        ...
