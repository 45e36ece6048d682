"""In-memory storage backends (tests and throwaway sessions)."""

from typing import Optional
from uuid import UUID

from fincontrol.models.audit import AuditEvent
from fincontrol.models.ledger import LedgerSnapshot
from fincontrol.services.storage.interface import (
    AuditStorageInterface,
    SnapshotNotFoundError,
    SnapshotStorageInterface,
)


class InMemorySnapshotStorage(SnapshotStorageInterface):
    """
    Keeps the serialized form, not the object, so a save/load cycle goes
    through the same JSON shape as the file backend.
    """

    def __init__(self):
        self._payload: Optional[str] = None
        self.save_count = 0

    def save_snapshot(self, snapshot: LedgerSnapshot) -> None:
        self._payload = snapshot.model_dump_json(by_alias=True)
        self.save_count += 1

    def load_snapshot(self) -> LedgerSnapshot:
        if self._payload is None:
            raise SnapshotNotFoundError("No snapshot saved in memory")
        return LedgerSnapshot.model_validate_json(self._payload)

    def exists(self) -> bool:
        return self._payload is not None

    @property
    def location(self) -> str:
        return "memory"


class InMemoryAuditStorage(AuditStorageInterface):
    def __init__(self):
        self.events: list[AuditEvent] = []

    def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]
