from __future__ import annotations

import copy
from datetime import datetime

from bulk_ingest.models import (
    EntityRecord,
    ImportBatch,
    ImportRecordLog,
    ImportSession,
    LearnedPattern,
)
from bulk_ingest.store.base import Store


class InMemoryStore(Store):
    """Store backed by plain Python dicts.

    Safe within a single asyncio event loop: no method awaits between
    reading and writing shared state. ``atomic()`` is inherited as a
    no-op from the base class.

    Values are copied on the way in and out so callers never share
    mutable state with the store, matching what a database would do.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ImportSession] = {}
        self._batches: dict[str, dict[int, ImportBatch]] = {}
        self._logs: dict[str, list[ImportRecordLog]] = {}
        self._entities: dict[str, EntityRecord] = {}
        self._patterns: dict[str, LearnedPattern] = {}

    @classmethod
    def from_config(cls, config: dict) -> InMemoryStore:
        return cls()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        pass

    async def reset(self) -> None:
        self.__init__()  # type: ignore[misc]

    async def close(self) -> None:
        pass

    # ── Import sessions ──────────────────────────────────────────────

    async def create_session(self, session: ImportSession) -> ImportSession:
        self._sessions[session.id] = copy.deepcopy(session)
        return session

    async def get_session(self, session_id: str) -> ImportSession | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def update_session(self, session: ImportSession) -> None:
        self._sessions[session.id] = copy.deepcopy(session)

    async def list_sessions(
        self, *, status: str | None = None
    ) -> list[ImportSession]:
        sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return [copy.deepcopy(s) for s in sorted(sessions, key=lambda s: s.created_at)]

    # ── Import batches ───────────────────────────────────────────────

    async def create_batches(self, batches: list[ImportBatch]) -> list[ImportBatch]:
        for batch in batches:
            self._batches.setdefault(batch.session_id, {})[batch.batch_number] = (
                copy.copy(batch)
            )
        return batches

    async def update_batch(self, batch: ImportBatch) -> None:
        self._batches.setdefault(batch.session_id, {})[batch.batch_number] = copy.copy(
            batch
        )

    async def list_batches(self, session_id: str) -> list[ImportBatch]:
        by_number = self._batches.get(session_id, {})
        return [copy.copy(by_number[n]) for n in sorted(by_number)]

    # ── Record logs ──────────────────────────────────────────────────

    async def add_record_log(self, log: ImportRecordLog) -> ImportRecordLog:
        self._logs.setdefault(log.session_id, []).append(copy.deepcopy(log))
        return log

    async def list_record_logs(
        self,
        session_id: str,
        *,
        status: str | None = None,
    ) -> list[ImportRecordLog]:
        logs = self._logs.get(session_id, [])
        if status is not None:
            logs = [entry for entry in logs if entry.status == status]
        return [
            copy.deepcopy(entry)
            for entry in sorted(logs, key=lambda entry: entry.record_index)
        ]

    # ── Entities ─────────────────────────────────────────────────────

    async def insert_entity(self, record: EntityRecord) -> str:
        self._entities[record.id] = copy.deepcopy(record)
        return record.id

    async def list_entities(
        self, *, entity_type: str | None = None
    ) -> list[EntityRecord]:
        records = list(self._entities.values())
        if entity_type is not None:
            records = [r for r in records if r.entity_type == entity_type]
        return [copy.deepcopy(r) for r in sorted(records, key=lambda r: r.created_at)]

    # ── Learned patterns ─────────────────────────────────────────────

    async def get_pattern(self, source_pattern: str) -> LearnedPattern | None:
        pattern = self._patterns.get(source_pattern)
        return copy.deepcopy(pattern) if pattern is not None else None

    async def upsert_pattern(self, pattern: LearnedPattern) -> LearnedPattern:
        existing = self._patterns.get(pattern.source_pattern)
        stored = copy.deepcopy(pattern)
        if existing is not None:
            stored.id = existing.id
            stored.created_at = existing.created_at
        self._patterns[pattern.source_pattern] = stored
        return copy.deepcopy(stored)

    async def list_patterns(
        self,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
    ) -> list[LearnedPattern]:
        patterns = list(self._patterns.values())
        if min_usage is not None:
            patterns = [p for p in patterns if p.usage_count > min_usage]
        if min_success_rate is not None:
            patterns = [p for p in patterns if p.success_rate > min_success_rate]
        patterns.sort(key=lambda p: p.usage_count, reverse=True)
        return [copy.deepcopy(p) for p in patterns]

    async def search_patterns(
        self,
        fragment: str,
        *,
        min_usage: int | None = None,
        min_success_rate: float | None = None,
        limit: int = 10,
    ) -> list[LearnedPattern]:
        patterns = [p for p in self._patterns.values() if fragment in p.source_pattern]
        if min_usage is not None:
            patterns = [p for p in patterns if p.usage_count > min_usage]
        if min_success_rate is not None:
            patterns = [p for p in patterns if p.success_rate > min_success_rate]
        patterns.sort(key=lambda p: p.usage_count, reverse=True)
        return [copy.deepcopy(p) for p in patterns[:limit]]

    async def delete_patterns(
        self,
        *,
        last_used_before: datetime,
        usage_below: int,
    ) -> int:
        stale = [
            key
            for key, p in self._patterns.items()
            if p.last_used_at < last_used_before and p.usage_count < usage_below
        ]
        for key in stale:
            del self._patterns[key]
        return len(stale)
