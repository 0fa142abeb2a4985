"""
Audit Logger

DESIGN DECISION: Every change to financial data and every sharing
decision is logged as a typed AuditEvent. This provides:
1. Traceability of who touched whose data
2. A trail of denied access attempts
3. Debugging context for imports that skipped rows

The audit logger:
- Is async so flows can await it without caring where events go
- Never raises into the calling flow
- Supports correlation IDs to tie together the events of one action
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from fintrack.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


# Configure structlog for local logging
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
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(log_level: str = "INFO") -> None:
    """
    Route structlog output through the standard library at ``log_level``.

    structlog renders the JSON line; the stdlib handler just prints it.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper()))
    logging.getLogger().setLevel(log_level.upper())


class AuditLogger:
    """
    Central audit logging service.

    Events go to the structured local log. Warnings and errors are
    emitted at the matching log level so they can be alerted on.
    """

    def __init__(self, logger_name: str = "fintrack.audit"):
        self._logger = structlog.get_logger(logger_name)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Returns False if the event could not be written. Never raises.
        """
        log_dict = event.to_log_dict()

        try:
            if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                self._logger.error("audit_event", **log_dict)
            elif event.severity == AuditSeverity.WARNING:
                self._logger.warning("audit_event", **log_dict)
            elif event.severity == AuditSeverity.DEBUG:
                self._logger.debug("audit_event", **log_dict)
            else:
                self._logger.info("audit_event", **log_dict)
        except (OSError, ValueError, TypeError) as e:
            # A broken handler must not take the caller down with it
            logging.getLogger(__name__).error("audit_log_failed: %s (event %s)", e, event.event_id)
            return False

        return True

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def log_transaction_created(
        self,
        actor_id: int,
        owner_id: int,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a single transaction create."""
        event = AuditEventBuilder.transaction_created(
            actor_id=actor_id,
            owner_id=owner_id,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_updated(
        self,
        actor_id: int,
        owner_id: int,
        transaction_id: int,
        fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_updated(
            actor_id=actor_id,
            owner_id=owner_id,
            transaction_id=transaction_id,
            fields=fields,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transaction_deleted(
        self,
        actor_id: int,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_deleted(
            actor_id=actor_id,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_duplicate_rejected(
        self,
        actor_id: int,
        owner_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.duplicate_rejected(
            actor_id=actor_id,
            owner_id=owner_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_import_completed(
        self,
        actor_id: int,
        owner_id: int,
        total: int,
        created: int,
        skipped: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the outcome of a batch import."""
        event = AuditEventBuilder.import_completed(
            actor_id=actor_id,
            owner_id=owner_id,
            total=total,
            created=created,
            skipped=skipped,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_validation_failed(
        self,
        actor_id: int,
        entity_type: str,
        rule: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.validation_failed(
            actor_id=actor_id,
            entity_type=entity_type,
            rule=rule,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_access_denied(
        self,
        actor_id: int,
        owner_id: int,
        intent: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.access_denied(
            actor_id=actor_id,
            owner_id=owner_id,
            intent=intent,
            correlation_id=correlation_id,
        )
        await self.log(event)

    # =========================================================================
    # SHARING
    # =========================================================================

    async def log_grant_created(
        self,
        owner_id: int,
        partner_id: int,
        grant_id: int,
        access_level: str,
    ) -> None:
        await self.log(AuditEventBuilder.grant_created(owner_id, partner_id, grant_id, access_level))

    async def log_grant_status_changed(
        self,
        actor_id: int,
        owner_id: int,
        grant_id: int,
        status: str,
    ) -> None:
        await self.log(AuditEventBuilder.grant_status_changed(actor_id, owner_id, grant_id, status))

    async def log_grant_level_changed(self, owner_id: int, grant_id: int, access_level: str) -> None:
        await self.log(AuditEventBuilder.grant_level_changed(owner_id, grant_id, access_level))

    async def log_grant_revoked(self, actor_id: int, owner_id: int, grant_id: int) -> None:
        await self.log(AuditEventBuilder.grant_revoked(actor_id, owner_id, grant_id))

    async def log_invitation_created(self, user_id: int, invitation_id: int) -> None:
        await self.log(AuditEventBuilder.invitation_created(user_id, invitation_id))

    async def log_invitation_redeemed(
        self,
        partner_id: int,
        owner_id: int,
        invitation_id: int,
        grant_id: int,
    ) -> None:
        event = AuditEventBuilder.invitation_redeemed(
            partner_id=partner_id,
            owner_id=owner_id,
            invitation_id=invitation_id,
            grant_id=grant_id,
        )
        await self.log(event)

    async def log_invitation_cancelled(self, user_id: int, invitation_id: int) -> None:
        await self.log(AuditEventBuilder.invitation_cancelled(user_id, invitation_id))

    # =========================================================================
    # SYSTEM
    # =========================================================================

    async def log_storage_selected(self, backend: str) -> None:
        await self.log(AuditEventBuilder.storage_selected(backend))

    async def log_storage_fallback(self, reason: str) -> None:
        await self.log(AuditEventBuilder.storage_fallback(reason))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a multi-step action (e.g., an import).
    Pass it through all subsequent operations.
    """
    return uuid4()
