"""
Storage Services Package

Provides abstract interfaces and concrete implementations for persisting
ledger snapshots and the audit log. JSON files by default; in-memory for tests.
"""

from fincontrol.services.storage.interface import (
    AuditStorageInterface,
    CorruptSnapshotError,
    SnapshotNotFoundError,
    SnapshotStorageInterface,
    StorageError,
)
from fincontrol.services.storage.json_file import (
    JsonFileSnapshotStorage,
    JsonLinesAuditStorage,
)
from fincontrol.services.storage.memory import (
    InMemoryAuditStorage,
    InMemorySnapshotStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "SnapshotStorageInterface",
    # Exceptions
    "CorruptSnapshotError",
    "SnapshotNotFoundError",
    "StorageError",
    # Implementations
    "InMemoryAuditStorage",
    "InMemorySnapshotStorage",
    "JsonFileSnapshotStorage",
    "JsonLinesAuditStorage",
]
