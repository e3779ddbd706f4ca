"""Storage backends for the event log, runs and step checkpoints."""

from justflow.storage.interface import StorageBackend, StoredEvent
from justflow.storage.memory import InMemoryBackend
from justflow.storage.sqlite import SQLiteBackend

__all__ = [
    "StorageBackend",
    "StoredEvent",
    "InMemoryBackend",
    "SQLiteBackend",
]
