"""Public return types for the bulk_ingest API."""

from __future__ import annotations

from dataclasses import dataclass, field

from bulk_ingest.extraction.types import ExtractionResult, Record
from bulk_ingest.inference.types import StructureReport
from bulk_ingest.learning.store import FieldSuggestions
from bulk_ingest.loading.metrics import SessionMetrics
from bulk_ingest.models import ImportSession


@dataclass
class FileAnalysis:
    """Result from :meth:`BulkIngest.analyze`."""

    file_name: str
    extraction: ExtractionResult
    structure: StructureReport
    suggestions: list[FieldSuggestions] = field(default_factory=list)

    @property
    def records(self) -> list[Record]:
        return self.extraction.data

    @property
    def needs_review(self) -> bool:
        return self.extraction.needs_review

    def suggestions_for(self, source_field: str) -> FieldSuggestions | None:
        for suggestion in self.suggestions:
            if suggestion.source_field == source_field:
                return suggestion
        return None


@dataclass
class ImportResult:
    """Result from :meth:`BulkIngest.import_file`."""

    session: ImportSession
    analysis: FileAnalysis


@dataclass
class SessionStatus:
    """Stored session state plus live metrics while it is still running."""

    session: ImportSession
    metrics: SessionMetrics | None = None

    @property
    def is_running(self) -> bool:
        return self.metrics is not None
