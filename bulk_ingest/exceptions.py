"""Exceptions raised across bulk_ingest.

Per-record validation problems are not exceptions; they travel as
:class:`~bulk_ingest.loading.validation.ValidationOutcome` values.
"""


class BulkIngestError(Exception):
    """Base class for every error raised by bulk_ingest."""

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ExtractionFailedError(BulkIngestError):
    """No strategy, including the emergency fallback, produced a record."""

    def __init__(self, message: str | None = None):
        super().__init__(
            f"Extraction failed: {message}" if message else "Extraction failed"
        )


class UnsupportedFileKindError(BulkIngestError, ValueError):
    """Raised when a declared file kind is not csv, json or spreadsheet."""


class MappingError(BulkIngestError):
    """A field mapping set cannot be applied (empty, blank or duplicate)."""


class InvalidStatusTransitionError(BulkIngestError):
    """Raised when a session status would move backwards or out of a terminal state."""

    def __init__(self, session_id: str, current: str, requested: str):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Session {session_id} cannot move from '{current}' to '{requested}'"
        )


class SessionNotFoundError(BulkIngestError, LookupError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Import session not found: {session_id}")


class SessionAlreadyActiveError(BulkIngestError):
    """A loader run is already in flight for the given session id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Import session {session_id} is already being processed")


class StoreUnavailableError(BulkIngestError):
    """Transient storage failure; callers may retry."""


class ConnectionRejectedError(BulkIngestError):
    """A progress-channel client connected without a session id or principal."""
