"""Main facade for the bulk_ingest library."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from types import TracebackType
from typing import TYPE_CHECKING, Any

from bulk_ingest.config import parse_config
from bulk_ingest.exceptions import ExtractionFailedError, MappingError, SessionNotFoundError
from bulk_ingest.extraction.extractor import AdaptiveExtractor, ExtractorConfig
from bulk_ingest.facade.types import FileAnalysis, ImportResult, SessionStatus
from bulk_ingest.inference.engine import FieldInferenceEngine, InferenceConfig
from bulk_ingest.learning.store import LearningConfig, LearningStatistics, LearningStore
from bulk_ingest.loading.events import LifecycleQueue
from bulk_ingest.loading.loader import BatchLoader, LoaderConfig, check_mappings
from bulk_ingest.progress.channel import ChannelConfig, ProgressChannel

if TYPE_CHECKING:
    from bulk_ingest.extraction.registry import StrategyRegistry
    from bulk_ingest.extraction.types import FileKind, Record
    from bulk_ingest.models import (
        FieldMapping,
        ImportBatch,
        ImportRecordLog,
        ImportSession,
        LearnedPattern,
    )
    from bulk_ingest.store.base import Store

logger = logging.getLogger(__name__)


class BulkIngest:
    """Main entry point: analyze a file, confirm a mapping, load it, watch progress.

    Owns exactly one instance of each component; they share the store
    and the lifecycle queue between the loader and the progress channel.

    Usage::

        ingest = BulkIngest(InMemoryStore())
        await ingest.init()
        analysis = await ingest.analyze(buffer, "products.csv")
        mappings = [FieldMapping("product_name", "name"), FieldMapping("price", "price")]
        result = await ingest.import_rows(analysis.records, "product", mappings)
        await ingest.close()
    """

    def __init__(
        self,
        store: Store,
        *,
        extractor_config: ExtractorConfig | None = None,
        inference_config: InferenceConfig | None = None,
        learning_config: LearningConfig | None = None,
        loader_config: LoaderConfig | None = None,
        channel_config: ChannelConfig | None = None,
        strategies: StrategyRegistry | None = None,
    ) -> None:
        self._store = store
        # Events are only queued while the channel relays them (after init).
        self._events = LifecycleQueue(needs_consumer=True)
        self.extractor = AdaptiveExtractor(extractor_config, strategies)
        self.inference = FieldInferenceEngine(inference_config)
        self.learning = LearningStore(store, learning_config)
        self.loader = BatchLoader(store, loader_config, self._events)
        self.channel = ProgressChannel(channel_config, self._events)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> BulkIngest:
        """Construct an instance from a configuration dict (see :func:`parse_config`)."""
        parsed = parse_config(config)
        return cls(
            parsed.store,
            extractor_config=parsed.extraction,
            inference_config=parsed.inference,
            learning_config=parsed.learning,
            loader_config=parsed.loading,
            channel_config=parsed.progress,
        )

    @property
    def store(self) -> Store:
        return self._store

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        """Create missing tables, warm the pattern cache and start the channel."""
        await self._store.init()
        await self.learning.warm_cache()
        await self.channel.start()

    async def reset(self) -> None:
        """Drop all data and recreate from scratch."""
        await self._store.reset()

    async def close(self) -> None:
        await self.channel.stop()
        await self._store.close()

    async def __aenter__(self) -> BulkIngest:
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ── Analysis ─────────────────────────────────────────────────────

    async def analyze(
        self,
        buffer: bytes,
        filename: str = "",
        kind: FileKind | str | None = None,
    ) -> FileAnalysis:
        """Extract, describe and suggest mappings for one uploaded file.

        Raises :class:`ExtractionFailedError` when nothing could be parsed.
        A low-confidence parse is returned with ``needs_review`` set.
        """
        result = await self.extractor.extract(buffer, filename, kind)
        if not result.success:
            raise ExtractionFailedError(result.error)
        if result.needs_review:
            logger.warning(
                "%s parsed by %s with low confidence %.0f; review before importing",
                filename or "<buffer>",
                result.strategy,
                result.confidence,
            )
        structure = self.inference.analyze_result(result)
        suggestions = await self.learning.suggest(result.columns)
        return FileAnalysis(
            file_name=filename,
            extraction=result,
            structure=structure,
            suggestions=suggestions,
        )

    async def confirm_mappings(self, mappings: Sequence[FieldMapping]) -> list[LearnedPattern]:
        """Record a confirmed mapping set so future files get suggestions."""
        return await self.learning.learn_mappings(mappings)

    # ── Import ───────────────────────────────────────────────────────

    async def create_session(
        self,
        entity_type: str,
        mappings: Sequence[FieldMapping],
        *,
        total_records: int = 0,
        file_name: str | None = None,
    ) -> ImportSession:
        """Create a pending session so clients can subscribe before loading starts."""
        return await self.loader.create_session(
            entity_type, mappings, total_records=total_records, file_name=file_name
        )

    async def run_import(
        self,
        session_id: str,
        rows: Sequence[Record],
        *,
        learn: bool = True,
    ) -> ImportSession:
        """Load *rows* into a pending session and return it once finished.

        A usable mapping set is also fed to the learning store unless
        ``learn`` is false. An unusable one fails the session instead.
        """
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if learn:
            try:
                check_mappings(session.field_mappings, session.entity_type)
            except MappingError:
                pass  # the loader records it on the session
            else:
                await self.confirm_mappings(session.field_mappings)
        return await self.loader.run(session_id, rows)

    async def import_rows(
        self,
        rows: Sequence[Record],
        entity_type: str,
        mappings: Sequence[FieldMapping],
        *,
        file_name: str | None = None,
        learn: bool = True,
    ) -> ImportSession:
        """Load *rows* as *entity_type* in a new session and return it finished."""
        session = await self.create_session(
            entity_type, mappings, total_records=len(rows), file_name=file_name
        )
        return await self.run_import(session.id, rows, learn=learn)

    async def import_file(
        self,
        buffer: bytes,
        filename: str,
        entity_type: str,
        mappings: Sequence[FieldMapping],
        *,
        kind: FileKind | str | None = None,
        learn: bool = True,
    ) -> ImportResult:
        analysis = await self.analyze(buffer, filename, kind)
        session = await self.import_rows(
            analysis.records,
            entity_type,
            mappings,
            file_name=filename,
            learn=learn,
        )
        return ImportResult(session=session, analysis=analysis)

    async def cancel_import(self, session_id: str) -> ImportSession:
        return await self.loader.cancel(session_id)

    async def retry_failed(self, session_id: str) -> ImportSession | None:
        """Re-run only the failed rows of a session as a new linked session."""
        return await self.loader.retry_failed(session_id)

    # ── Queries ──────────────────────────────────────────────────────

    async def session_status(self, session_id: str) -> SessionStatus:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return SessionStatus(session=session, metrics=self.loader.get_metrics(session_id))

    async def session_batches(self, session_id: str) -> list[ImportBatch]:
        return await self.loader.get_batches(session_id)

    async def session_records(
        self, session_id: str, *, status: str | None = None
    ) -> list[ImportRecordLog]:
        return await self._store.list_record_logs(session_id, status=status)

    async def learning_statistics(self) -> LearningStatistics:
        return await self.learning.statistics()

    async def prune_patterns(self) -> int:
        return await self.learning.prune()
