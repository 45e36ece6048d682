"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep the core free of I/O (it only ever sees snapshots)
2. Use in-memory storage for testing
3. Swap the JSON file for a database later

The interface is intentionally simple: the ledger is persisted whole,
as one JSON-serializable snapshot. The audit log is append-only.
"""

from abc import ABC, abstractmethod
from uuid import UUID

from fincontrol.models.audit import AuditEvent
from fincontrol.models.ledger import LedgerSnapshot


class SnapshotStorageInterface(ABC):
    """
    Abstract interface for ledger snapshot storage.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    def save_snapshot(self, snapshot: LedgerSnapshot) -> None:
        """
        Persist a snapshot, replacing the previous one.

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    def load_snapshot(self) -> LedgerSnapshot:
        """
        Load the persisted snapshot.

        Raises:
            SnapshotNotFoundError: Nothing has been saved yet
            CorruptSnapshotError: Stored data cannot be parsed
        """
        pass

    @abstractmethod
    def exists(self) -> bool:
        """True if a snapshot has been saved."""
        pass

    @property
    def location(self) -> str:
        return type(self).__name__


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one bills commit).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class SnapshotNotFoundError(StorageError):
    """No snapshot has been saved yet."""
    pass


class CorruptSnapshotError(StorageError):
    """Stored snapshot could not be parsed or violates ledger invariants."""
    pass
