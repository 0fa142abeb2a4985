"""
Audit Models for fintrack

Every write to financial data and every sharing decision is logged.
This provides:
1. Traceability of who changed whose data
2. Debugging information when imports go wrong
3. A record of denied access attempts

DESIGN DECISION: Audit events carry ids and counts, never amounts or
descriptions. The log must not become a second copy of the ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    DUPLICATE_REJECTED = "duplicate_rejected"
    IMPORT_COMPLETED = "import_completed"
    VALIDATION_FAILED = "validation_failed"

    # Sharing
    ACCESS_DENIED = "access_denied"
    GRANT_CREATED = "grant_created"
    GRANT_STATUS_CHANGED = "grant_status_changed"
    GRANT_LEVEL_CHANGED = "grant_level_changed"
    GRANT_REVOKED = "grant_revoked"
    INVITATION_CREATED = "invitation_created"
    INVITATION_REDEEMED = "invitation_redeemed"
    INVITATION_CANCELLED = "invitation_cancelled"

    # System events
    STORAGE_SELECTED = "storage_selected"
    STORAGE_FALLBACK = "storage_fallback"
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
        default_factory=datetime.utcnow,
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

    # Who did it, and to whose data
    actor_id: Optional[int] = Field(
        default=None,
        description="User that triggered the event"
    )
    owner_id: Optional[int] = Field(
        default=None,
        description="User whose data was touched"
    )

    # What entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'shared_access')"
    )
    entity_id: Optional[int] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one import)"
    )

    # Event details
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
            "actor_id": self.actor_id,
            "owner_id": self.owner_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(actor_id, transaction)
        event = AuditEventBuilder.access_denied(actor_id, owner_id, "write")
    """

    @staticmethod
    def transaction_created(
        actor_id: int,
        owner_id: int,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Transaction created",
        )

    @staticmethod
    def transaction_updated(
        actor_id: int,
        owner_id: int,
        transaction_id: int,
        fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction updated ({len(fields)} fields)",
            details={"fields": sorted(fields)},
        )

    @staticmethod
    def transaction_deleted(
        actor_id: int,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            actor_id=actor_id,
            owner_id=actor_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Transaction deleted",
        )

    @staticmethod
    def duplicate_rejected(
        actor_id: int,
        owner_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_REJECTED,
            severity=AuditSeverity.WARNING,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="transaction",
            correlation_id=correlation_id,
            description="Transaction rejected: import hash already exists",
        )

    @staticmethod
    def import_completed(
        actor_id: int,
        owner_id: int,
        total: int,
        created: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_COMPLETED,
            severity=AuditSeverity.WARNING if skipped else AuditSeverity.INFO,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=f"Import finished: {created} of {total} created",
            details={
                "total": total,
                "created": created,
                "skipped": skipped,
            },
        )

    @staticmethod
    def validation_failed(
        actor_id: int,
        entity_type: str,
        rule: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            actor_id=actor_id,
            entity_type=entity_type,
            correlation_id=correlation_id,
            description=f"Validation failed: {rule}",
            error_code=rule,
        )

    @staticmethod
    def access_denied(
        actor_id: int,
        owner_id: int,
        intent: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCESS_DENIED,
            severity=AuditSeverity.WARNING,
            actor_id=actor_id,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description=f"Access denied for {intent}",
            details={"intent": intent},
        )

    @staticmethod
    def grant_created(
        owner_id: int,
        partner_id: int,
        grant_id: int,
        access_level: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_CREATED,
            actor_id=owner_id,
            owner_id=owner_id,
            entity_type="shared_access",
            entity_id=grant_id,
            description=f"Sharing grant created at level {access_level}",
            details={
                "partner_id": partner_id,
                "access_level": access_level,
            },
        )

    @staticmethod
    def grant_status_changed(
        actor_id: int,
        owner_id: int,
        grant_id: int,
        status: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_STATUS_CHANGED,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="shared_access",
            entity_id=grant_id,
            description=f"Sharing grant {status}",
            details={"status": status},
        )

    @staticmethod
    def grant_level_changed(
        owner_id: int,
        grant_id: int,
        access_level: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_LEVEL_CHANGED,
            actor_id=owner_id,
            owner_id=owner_id,
            entity_type="shared_access",
            entity_id=grant_id,
            description=f"Sharing grant level set to {access_level}",
            details={"access_level": access_level},
        )

    @staticmethod
    def grant_revoked(actor_id: int, owner_id: int, grant_id: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_REVOKED,
            actor_id=actor_id,
            owner_id=owner_id,
            entity_type="shared_access",
            entity_id=grant_id,
            description="Sharing grant revoked",
        )

    @staticmethod
    def invitation_created(user_id: int, invitation_id: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVITATION_CREATED,
            actor_id=user_id,
            owner_id=user_id,
            entity_type="invitation",
            entity_id=invitation_id,
            description="Invitation created",
        )

    @staticmethod
    def invitation_redeemed(
        partner_id: int,
        owner_id: int,
        invitation_id: int,
        grant_id: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVITATION_REDEEMED,
            actor_id=partner_id,
            owner_id=owner_id,
            entity_type="invitation",
            entity_id=invitation_id,
            description="Invitation redeemed into a sharing grant",
            details={"grant_id": grant_id},
        )

    @staticmethod
    def invitation_cancelled(user_id: int, invitation_id: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVITATION_CANCELLED,
            actor_id=user_id,
            owner_id=user_id,
            entity_type="invitation",
            entity_id=invitation_id,
            description="Invitation cancelled",
        )

    @staticmethod
    def storage_selected(backend: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_SELECTED,
            description=f"Storage backend selected: {backend}",
            details={"backend": backend},
        )

    @staticmethod
    def storage_fallback(reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_FALLBACK,
            severity=AuditSeverity.WARNING,
            description="Durable storage unavailable, falling back to in-memory storage",
            error_message=reason,
            details={"backend": "memory"},
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
