from bulk_ingest.store.base import Store
from bulk_ingest.store.memory import InMemoryStore

__all__ = ["InMemoryStore", "Store"]
