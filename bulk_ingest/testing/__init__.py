from bulk_ingest.testing.connections import RecordingConnection

__all__ = ["RecordingConnection"]
