"""
Audit Models for the Financial Core

Every ledger mutation is logged for audit purposes.
This provides:
1. Traceability of every balance-affecting change
2. Debugging information when a reconciliation goes wrong
3. A history the household can read back

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
Events of one commit (bills "save and close", statement review) share a
correlation id.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from fincontrol.models.ledger import Transaction, utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Ledger
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSFER_CREATED = "transfer_created"

    # Entities (accounts, categories, loans, vehicles, policies, bills, rules)
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"

    # Loans & insurance
    LOAN_CONFIGURED = "loan_configured"
    INSTALLMENT_PAID = "installment_paid"
    INSTALLMENT_UNPAID = "installment_unpaid"

    # Commits
    BILLS_COMMITTED = "bills_committed"
    STATEMENT_IMPORTED = "statement_imported"
    STATEMENT_COMMITTED = "statement_committed"
    COMMIT_ROLLED_BACK = "commit_rolled_back"

    # Rejections
    VALIDATION_REJECTED = "validation_rejected"
    INTEGRITY_REJECTED = "integrity_rejected"

    # Persistence
    SNAPSHOT_SAVED = "snapshot_saved"
    SNAPSHOT_LOADED = "snapshot_loaded"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'loan', 'statement')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    snapshot_version: Optional[int] = Field(
        default=None,
        description="Ledger version produced by the change"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all effects of one commit)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "snapshot_version": self.snapshot_version,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_json_line(self) -> str:
        """One line of the JSON lines audit log."""
        return json.dumps(self.model_dump(mode="json"), ensure_ascii=False)


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(tx)
        event = AuditEventBuilder.rejected("validation", message, issues)
    """

    @staticmethod
    def transaction_created(tx: Transaction) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=tx.id,
            description=f"{tx.operation_type.value} {tx.flow.value} {tx.amount} on {tx.date}",
            details={
                "account_id": tx.account_id,
                "operation_type": tx.operation_type.value,
                "amount": str(tx.amount),
                "source": tx.meta.source.value,
            },
        )

    @staticmethod
    def transfer_created(legs: list[Transaction]) -> AuditEvent:
        out_leg = next(t for t in legs if not t.is_inflow)
        in_leg = next(t for t in legs if t.is_inflow)
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_CREATED,
            entity_type="transfer_group",
            entity_id=out_leg.links.transfer_group_id,
            description=(
                f"{out_leg.operation_type.value} of {out_leg.amount} from "
                f"{out_leg.account_id} to {in_leg.account_id}"
            ),
            details={
                "transaction_ids": [t.id for t in legs],
                "amount": str(out_leg.amount),
            },
        )

    @staticmethod
    def transaction_updated(tx_id: str, changes: dict, propagated_to: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            entity_type="transaction",
            entity_id=tx_id,
            description=f"Transaction edited: {', '.join(sorted(changes))}",
            details={
                "changes": {k: str(v) for k, v in changes.items()},
                "propagated_to": propagated_to,
            },
        )

    @staticmethod
    def transaction_deleted(tx_id: str, removed: list[str], cascade: dict) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transaction",
            entity_id=tx_id,
            description=f"Deleted {len(removed)} transaction(s)",
            details={
                "removed": removed,
                "cascade": cascade,
            },
        )

    @staticmethod
    def entity_changed(
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        label: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = {
            AuditEventType.ENTITY_CREATED: "created",
            AuditEventType.ENTITY_UPDATED: "updated",
            AuditEventType.ENTITY_DELETED: "deleted",
            AuditEventType.LOAN_CONFIGURED: "configured",
        }.get(event_type, event_type.value)
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"{entity_type.replace('_', ' ').capitalize()} {verb}: {label}",
            details=details or {},
        )

    @staticmethod
    def installment_marked(
        entity_type: str,
        entity_id: str,
        number: int,
        paid: bool,
        transaction_id: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.INSTALLMENT_PAID if paid else AuditEventType.INSTALLMENT_UNPAID
            ),
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Installment {number} marked {'paid' if paid else 'unpaid'}",
            details={
                "installment_number": number,
                "transaction_id": transaction_id,
            },
        )

    @staticmethod
    def commit_completed(
        event_type: AuditEventType,
        entity_type: str,
        description: str,
        details: dict,
        entity_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
            details=details,
        )

    @staticmethod
    def rolled_back(error: Exception) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMIT_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            description="Atomic change rolled back",
            error_code=type(error).__name__,
            error_message=str(error),
        )

    @staticmethod
    def rejected(
        kind: str,
        message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.INTEGRITY_REJECTED
            if kind == "integrity"
            else AuditEventType.VALIDATION_REJECTED
        )
        return AuditEvent(
            event_type=event_type,
            severity=AuditSeverity.WARNING,
            description=f"{kind.capitalize()} check rejected a change",
            error_message=message,
            details=details or {},
        )

    @staticmethod
    def snapshot_persisted(saved: bool, version: int, location: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_SAVED if saved else AuditEventType.SNAPSHOT_LOADED,
            entity_type="snapshot",
            snapshot_version=version,
            description=f"Snapshot v{version} {'saved to' if saved else 'loaded from'} {location}",
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
