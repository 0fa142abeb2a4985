"""
Data Models Package

This package contains all Pydantic models used by fintrack.
All data flowing through the storage contract must conform to these schemas.
"""

from fintrack.models.user import (
    User,
    UserCreate,
    UserPatch,
)
from fintrack.models.transaction import (
    Frequency,
    NewTransaction,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPatch,
    TransactionType,
)
from fintrack.models.sharing import (
    AccessLevel,
    Invitation,
    InvitationCreate,
    SharedAccess,
    SharedAccessCreate,
    SharingStatus,
)
from fintrack.models.reports import (
    BulkUpdateFailure,
    BulkUpdateResult,
    ImportResult,
    ImportStats,
    SkipReason,
    SkippedRecord,
)
from fintrack.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # User models
    "User",
    "UserCreate",
    "UserPatch",
    # Transaction models
    "Frequency",
    "NewTransaction",
    "Transaction",
    "TransactionCreate",
    "TransactionFilter",
    "TransactionPatch",
    "TransactionType",
    # Sharing models
    "AccessLevel",
    "Invitation",
    "InvitationCreate",
    "SharedAccess",
    "SharedAccessCreate",
    "SharingStatus",
    # Reports
    "BulkUpdateFailure",
    "BulkUpdateResult",
    "ImportResult",
    "ImportStats",
    "SkipReason",
    "SkippedRecord",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
