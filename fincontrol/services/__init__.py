"""Services package."""

from fincontrol.services.storage import (
    AuditStorageInterface,
    CorruptSnapshotError,
    InMemoryAuditStorage,
    InMemorySnapshotStorage,
    JsonFileSnapshotStorage,
    JsonLinesAuditStorage,
    SnapshotNotFoundError,
    SnapshotStorageInterface,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "CorruptSnapshotError",
    "InMemoryAuditStorage",
    "InMemorySnapshotStorage",
    "JsonFileSnapshotStorage",
    "JsonLinesAuditStorage",
    "SnapshotNotFoundError",
    "SnapshotStorageInterface",
    "StorageError",
]
