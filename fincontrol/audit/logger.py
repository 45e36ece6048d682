"""
Audit Logger

DESIGN DECISION: Every ledger mutation is logged.
This provides:
1. Complete traceability
2. Debugging capability
3. A readable history of the household ledger

The audit logger:
- Is synchronous, like the rest of the core
- Never blocks a mutation: a failing audit sink is reported and skipped
- Stamps correlation IDs so one commit's events can be read back together
"""

from collections.abc import Iterable
from typing import Optional
from uuid import UUID, uuid4

import structlog

from fincontrol.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from fincontrol.services.storage.interface import AuditStorageInterface, StorageError


def configure_logging(json_output: bool = True) -> None:
    """Route structlog through stdlib logging, rendering JSON or console lines."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)


class AuditLogger:
    """
    Writes ledger audit events to the structured log and, when configured,
    to an append-only audit storage.
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        """
        Args:
            storage: Audit sink. If None, events only reach the local log.
        """
        self._storage = storage
        self._logger = structlog.get_logger("fincontrol.audit")

    @property
    def storage(self) -> Optional[AuditStorageInterface]:
        return self._storage

    def log(self, event: AuditEvent) -> bool:
        """
        Log one event locally and append it to storage.

        Returns False only when the storage append failed.
        """
        fields = event.to_log_dict()
        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **fields)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **fields)
        else:
            self._logger.info("audit_event", **fields)

        if self._storage is None:
            return True
        try:
            return self._storage.append_event(event)
        except (StorageError, OSError) as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
                event_type=event.event_type.value,
            )
            return False

    def log_many(
        self,
        events: Iterable[AuditEvent],
        correlation_id: Optional[UUID] = None,
        snapshot_version: Optional[int] = None,
    ) -> bool:
        """Log a batch, filling in a shared correlation id and ledger version."""
        ok = True
        for event in events:
            updates = {}
            if correlation_id is not None and event.correlation_id is None:
                updates["correlation_id"] = correlation_id
            if snapshot_version is not None and event.snapshot_version is None:
                updates["snapshot_version"] = snapshot_version
            if updates:
                event = event.model_copy(update=updates)
            ok = self.log(event) and ok
        return ok

    def log_rejection(
        self,
        reason: str,
        message: str,
        details: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """A mutation refused by validation or referential integrity."""
        event = AuditEventBuilder.rejected(reason, message, details)
        if correlation_id is not None:
            event = event.model_copy(update={"correlation_id": correlation_id})
        self.log(event)

    def log_rollback(self, error: Exception, correlation_id: Optional[UUID]) -> None:
        """An atomic block that failed and left the ledger unchanged."""
        self.log(AuditEventBuilder.rolled_back(error).model_copy(
            update={"correlation_id": correlation_id}
        ))


def create_correlation_id() -> UUID:
    """
    New correlation ID for one commit.

    Every event the commit produces carries it.
    """
    return uuid4()
