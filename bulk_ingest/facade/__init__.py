from bulk_ingest.facade.core import BulkIngest
from bulk_ingest.facade.types import FileAnalysis, ImportResult, SessionStatus

__all__ = ["BulkIngest", "FileAnalysis", "ImportResult", "SessionStatus"]
