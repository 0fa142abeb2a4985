"""
Main Orchestrator for fintrack

This module ties together storage, validation, deduplication and access
control, and defines the end-to-end flows for:
1. Transactions (create, import, read, list, update, bulk update, delete)
2. Sharing grants (share, respond, change level, revoke)
3. Invitations (invite, inspect, accept, cancel)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing touches an owner's data before access control says yes
- A requester who can't read the owner's data learns nothing about it,
  not even whether a record exists
- Batch imports never abort because of one bad row
- Every change is audited

Flows take an already-authenticated user id. They do not do HTTP.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from fintrack.access import AccessDeniedError, AccessIntent, AccessResolver
from fintrack.audit import AuditLogger, configure_logging, create_correlation_id
from fintrack.config import Settings, get_settings
from fintrack.dedup import DuplicateResolver, derive_import_hash
from fintrack.models.reports import (
    BulkUpdateFailure,
    BulkUpdateResult,
    ImportResult,
    ImportStats,
    SkippedRecord,
    SkipReason,
)
from fintrack.models.sharing import (
    AccessLevel,
    Invitation,
    InvitationCreate,
    SharedAccess,
    SharedAccessCreate,
    SharingStatus,
)
from fintrack.models.transaction import (
    NewTransaction,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPatch,
)
from fintrack.services.storage import (
    DuplicateImportHashError,
    GrantStateError,
    InvitationUnavailableError,
    StorageInterface,
    initialize_storage,
)
from fintrack.validation import (
    SharingValidationError,
    TransactionValidationError,
    TransactionValidator,
    ValidationFailedError,
    ValidationRule,
)


logger = structlog.get_logger(__name__)


class ImportTooLargeError(Exception):
    """The batch exceeds the configured import limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Import of {size} records exceeds the limit of {limit}")


def _as_record(raw: Union[TransactionCreate, dict]) -> dict[str, Any]:
    """The submitted row, as received, for skip reports."""
    if isinstance(raw, TransactionCreate):
        return raw.model_dump(mode="json", by_alias=True, exclude_unset=True)
    return dict(raw)


class TransactionFlow:
    """
    Orchestrates transaction reads and writes on behalf of a requester.

    The requester may act on their own data, or on an owner's data
    through an accepted sharing grant. Deletes are owner-only.
    """

    def __init__(
        self,
        storage: StorageInterface,
        access_resolver: Optional[AccessResolver] = None,
        duplicate_resolver: Optional[DuplicateResolver] = None,
        audit_logger: Optional[AuditLogger] = None,
        max_import_batch_size: int = 5000,
        derive_missing_hashes: bool = False,
    ):
        self._storage = storage
        self._access = access_resolver or AccessResolver(storage)
        self._duplicates = duplicate_resolver or DuplicateResolver(storage)
        self._audit_logger = audit_logger
        self._validator = TransactionValidator()
        self._max_import_batch_size = max_import_batch_size
        self._derive_missing_hashes = derive_missing_hashes

    async def create_transaction(
        self,
        user_id: int,
        payload: TransactionCreate,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Create one transaction.

        The owner is ``payload.user_id`` when given, else the requester.

        Raises:
            AccessDeniedError: The requester can't write the owner's data
            TransactionValidationError: On the first violated rule
            DuplicateImportHashError: The import hash is taken. The existing
                record is attached only if the requester may read it.
        """
        owner_id = payload.user_id if payload.user_id is not None else user_id
        await self._require(user_id, owner_id, AccessIntent.WRITE, correlation_id)

        payload = payload.model_copy(update={"user_id": owner_id})
        try:
            transaction = await self._storage.create_transaction(payload)
        except TransactionValidationError as e:
            await self._log_validation_failed(user_id, e, correlation_id)
            raise
        except DuplicateImportHashError as e:
            raise await self._redacted_duplicate(user_id, owner_id, e, correlation_id) from e

        if self._audit_logger:
            await self._audit_logger.log_transaction_created(
                actor_id=user_id,
                owner_id=owner_id,
                transaction_id=transaction.id,
                correlation_id=correlation_id,
            )
        return transaction

    async def import_transactions(
        self,
        user_id: int,
        records: list[Union[TransactionCreate, dict]],
        owner_id: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Import a batch of statement rows.

        Flow:
        1. Authorize a write on the owner's data
        2. Validate every row; invalid rows are skipped with their rule
        3. Skip rows whose import hash is already stored, or repeats an
           earlier row of the same batch
           (rows without a hash get a derived one when derive_missing_hashes is on)
        4. Insert the remaining rows atomically

        Raises:
            AccessDeniedError: The requester can't write the owner's data
            ImportTooLargeError: More rows than max_import_batch_size
        """
        owner_id = owner_id if owner_id is not None else user_id
        correlation_id = correlation_id or create_correlation_id()
        await self._require(user_id, owner_id, AccessIntent.WRITE, correlation_id)

        if len(records) > self._max_import_batch_size:
            raise ImportTooLargeError(len(records), self._max_import_batch_size)

        owner_exists = await self._storage.get_user(owner_id) is not None
        accepted: list[TransactionCreate] = []
        skipped: list[SkippedRecord] = []
        batch_hashes: set[str] = set()

        for index, raw in enumerate(records):
            try:
                payload = (
                    raw if isinstance(raw, TransactionCreate)
                    else TransactionCreate.model_validate(raw)
                )
                payload = payload.model_copy(update={"user_id": owner_id})
                candidate = self._validator.validate_create(payload, user_exists=owner_exists)
            except ValidationFailedError as e:
                skipped.append(SkippedRecord(
                    index=index,
                    reason=SkipReason.VALIDATION_ERROR,
                    rule=e.rule.value,
                    message=e.message,
                    record=_as_record(raw),
                ))
                continue
            except ValidationError as e:
                skipped.append(SkippedRecord(
                    index=index,
                    reason=SkipReason.VALIDATION_ERROR,
                    message=str(e.errors()[0]["msg"]) if e.errors() else str(e),
                    record=_as_record(raw),
                ))
                continue

            import_hash = candidate.import_hash
            if not import_hash and self._derive_missing_hashes:
                import_hash = derive_import_hash(
                    candidate.date, candidate.amount, candidate.description, candidate.reference
                )
                candidate = candidate.model_copy(update={"import_hash": import_hash})
            if import_hash:
                is_duplicate = import_hash in batch_hashes
                existing_id = None
                if not is_duplicate:
                    existing = await self._duplicates.resolve_duplicate(import_hash)
                    if existing is not None:
                        is_duplicate = True
                        # Never reveal another owner's record
                        existing_id = existing.id if existing.belongs_to(owner_id) else None

                if is_duplicate:
                    skipped.append(SkippedRecord(
                        index=index,
                        reason=SkipReason.DUPLICATE_IMPORT_HASH,
                        message="Transaction with this import hash already exists",
                        record=_as_record(raw),
                        existing_transaction_id=existing_id,
                    ))
                    continue
                batch_hashes.add(import_hash)

            accepted.append(payload)

        created: list[Transaction] = []
        if accepted:
            created = await self._storage.create_many_transactions(accepted)

        if self._audit_logger:
            await self._audit_logger.log_import_completed(
                actor_id=user_id,
                owner_id=owner_id,
                total=len(records),
                created=len(created),
                skipped=len(skipped),
                correlation_id=correlation_id,
            )

        return ImportResult(
            created=created,
            skipped=skipped,
            stats=ImportStats(total=len(records), created=len(created), skipped=len(skipped)),
        )

    async def get_transaction(self, user_id: int, transaction_id: int) -> Optional[Transaction]:
        """Returns None when the record is missing OR the requester can't read it."""
        transaction = await self._storage.get_transaction_by_id(transaction_id)
        if transaction is None:
            return None
        if not await self._access.can_read(user_id, transaction.user_id):
            await self._log_access_denied(user_id, transaction.user_id, AccessIntent.READ)
            return None
        return transaction

    async def list_transactions(
        self,
        user_id: int,
        owner_id: Optional[int] = None,
        filters: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        """
        List an owner's transactions, newest first.

        Filter precedence: date range, then category, then budget period.

        Raises:
            AccessDeniedError: The requester can't read the owner's data
        """
        owner_id = owner_id if owner_id is not None else user_id
        await self._require(user_id, owner_id, AccessIntent.READ)

        filters = filters or TransactionFilter()
        if filters.has_date_range:
            return await self._storage.get_transactions_by_date_range(
                owner_id, filters.start_date, filters.end_date
            )
        if filters.category:
            return await self._storage.get_transactions_by_category(owner_id, filters.category)
        if filters.has_budget_period:
            return await self._storage.get_transactions_by_budget_month(
                owner_id, filters.budget_month, filters.budget_year
            )
        return await self._storage.get_transactions(owner_id)

    async def update_transaction(
        self,
        user_id: int,
        transaction_id: int,
        patch: TransactionPatch,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        """
        Apply a partial update.

        Returns None when the record is missing or unreadable to the requester.

        Raises:
            AccessDeniedError: The requester can read but not write it
            TransactionValidationError, DuplicateImportHashError
        """
        current = await self._storage.get_transaction_by_id(transaction_id)
        if current is None:
            return None
        owner_id = current.user_id

        decision = await self._access.authorize(user_id, owner_id, AccessIntent.WRITE)
        if not decision.granted:
            await self._log_access_denied(user_id, owner_id, AccessIntent.WRITE, correlation_id)
            if await self._access.can_read(user_id, owner_id):
                raise AccessDeniedError(user_id, owner_id, AccessIntent.WRITE)
            return None

        try:
            updated = await self._storage.update_transaction(transaction_id, patch)
        except TransactionValidationError as e:
            await self._log_validation_failed(user_id, e, correlation_id)
            raise
        except DuplicateImportHashError as e:
            raise await self._redacted_duplicate(user_id, owner_id, e, correlation_id) from e

        if updated is not None and self._audit_logger:
            fields = [
                name for name in NewTransaction.model_fields
                if getattr(current, name) != getattr(updated, name)
            ]
            if fields:
                await self._audit_logger.log_transaction_updated(
                    actor_id=user_id,
                    owner_id=owner_id,
                    transaction_id=transaction_id,
                    fields=fields,
                    correlation_id=correlation_id,
                )
        return updated

    async def bulk_update_transactions(
        self,
        user_id: int,
        updates: list[dict[str, Any]],
    ) -> BulkUpdateResult:
        """
        Apply many partial updates. Each entry must carry an ``id``.

        Entries are independent: one failing entry never stops the rest.
        """
        correlation_id = create_correlation_id()
        result = BulkUpdateResult()

        for entry in updates:
            fields = dict(entry)
            transaction_id = fields.pop("id", None)
            if transaction_id is None:
                result.failed.append(BulkUpdateFailure(
                    code="MISSING_ID",
                    message="Transaction ID is required",
                ))
                continue

            try:
                patch = TransactionPatch.model_validate(fields)
                updated = await self.update_transaction(
                    user_id, transaction_id, patch, correlation_id=correlation_id
                )
            except ValidationError as e:
                result.failed.append(BulkUpdateFailure(
                    id=transaction_id,
                    code="INVALID_REQUEST",
                    message=str(e.errors()[0]["msg"]) if e.errors() else str(e),
                ))
                continue
            except AccessDeniedError as e:
                result.failed.append(BulkUpdateFailure(
                    id=transaction_id,
                    code="FORBIDDEN",
                    message=str(e),
                ))
                continue
            except ValidationFailedError as e:
                result.failed.append(BulkUpdateFailure(
                    id=transaction_id,
                    code=e.rule.value,
                    message=e.message,
                ))
                continue
            except DuplicateImportHashError as e:
                result.failed.append(BulkUpdateFailure(
                    id=transaction_id,
                    code="UPDATE_FAILED",
                    message=str(e),
                ))
                continue

            if updated is None:
                result.failed.append(BulkUpdateFailure(
                    id=transaction_id,
                    code="NOT_FOUND",
                    message="Transaction not found",
                ))
            else:
                result.updated.append(updated)

        return result

    async def delete_transaction(
        self,
        user_id: int,
        transaction_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Delete a transaction. Owner only.

        Returns False when the record is missing or unreadable to the requester.

        Raises:
            AccessDeniedError: A partner who can read the record tried to delete it
        """
        current = await self._storage.get_transaction_by_id(transaction_id)
        if current is None:
            return False

        if not current.belongs_to(user_id):
            await self._log_access_denied(user_id, current.user_id, AccessIntent.DELETE, correlation_id)
            if await self._access.can_read(user_id, current.user_id):
                raise AccessDeniedError(user_id, current.user_id, AccessIntent.DELETE)
            return False

        deleted = await self._storage.delete_transaction(transaction_id)
        if deleted and self._audit_logger:
            await self._audit_logger.log_transaction_deleted(
                actor_id=user_id,
                transaction_id=transaction_id,
                correlation_id=correlation_id,
            )
        return deleted

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _require(
        self,
        user_id: int,
        owner_id: int,
        intent: AccessIntent,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        try:
            await self._access.require(user_id, owner_id, intent)
        except AccessDeniedError:
            await self._log_access_denied(user_id, owner_id, intent, correlation_id)
            raise

    async def _redacted_duplicate(
        self,
        user_id: int,
        owner_id: int,
        error: DuplicateImportHashError,
        correlation_id: Optional[UUID],
    ) -> DuplicateImportHashError:
        if self._audit_logger:
            await self._audit_logger.log_duplicate_rejected(
                actor_id=user_id,
                owner_id=owner_id,
                correlation_id=correlation_id,
            )
        existing = error.existing
        if existing is not None and not await self._access.can_read(user_id, existing.user_id):
            existing = None
        return DuplicateImportHashError(error.import_hash, existing)

    async def _log_access_denied(
        self,
        user_id: int,
        owner_id: int,
        intent: AccessIntent,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_access_denied(
                actor_id=user_id,
                owner_id=owner_id,
                intent=intent.value,
                correlation_id=correlation_id,
            )

    async def _log_validation_failed(
        self,
        user_id: int,
        error: ValidationFailedError,
        correlation_id: Optional[UUID],
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_validation_failed(
                actor_id=user_id,
                entity_type="transaction",
                rule=error.rule.value,
                correlation_id=correlation_id,
            )


class SharingFlow:
    """
    Orchestrates the sharing grant lifecycle.

    pending -> accepted | rejected, decided by the partner.
    The owner may change the level; either party may revoke.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger

    async def share_with(
        self,
        owner_id: int,
        partner_email: str,
        access_level: AccessLevel = AccessLevel.VIEW,
    ) -> SharedAccess:
        """
        Offer a grant to an existing user, found by email.

        Raises:
            SharingValidationError: Unknown partner, or sharing with yourself
            DuplicateSharedAccessError: A grant to this partner already exists
        """
        partner = await self._storage.get_user_by_email(partner_email.strip())
        if partner is None:
            raise SharingValidationError(ValidationRule.PARTNER_NOT_FOUND, "email")

        grant = await self._storage.create_shared_access(
            SharedAccessCreate(owner_id=owner_id, partner_id=partner.id, access_level=access_level)
        )
        if self._audit_logger:
            await self._audit_logger.log_grant_created(
                owner_id=owner_id,
                partner_id=partner.id,
                grant_id=grant.id,
                access_level=grant.access_level.value,
            )
        return grant

    async def list_grants(self, user_id: int) -> list[SharedAccess]:
        """Grants the user gave and received."""
        return await self._storage.get_shared_accesses(user_id)

    async def respond(
        self,
        partner_id: int,
        grant_id: int,
        status: SharingStatus,
    ) -> Optional[SharedAccess]:
        """
        Accept or reject a pending grant. Partner only.

        Returns None when the grant is missing or doesn't involve the user.

        Raises:
            AccessDeniedError: The owner tried to answer their own offer
            GrantStateError: The grant was already answered, or status is pending
        """
        status = SharingStatus(status)
        grant = await self._storage.get_shared_access_by_id(grant_id)
        if grant is None or not grant.involves(partner_id):
            return None
        if grant.partner_id != partner_id:
            raise AccessDeniedError(partner_id, grant.owner_id, AccessIntent.WRITE)
        if grant.status != SharingStatus.PENDING or status == SharingStatus.PENDING:
            raise GrantStateError(grant.status, status)

        updated = await self._storage.update_shared_access_status(grant_id, status)
        if updated is not None and self._audit_logger:
            await self._audit_logger.log_grant_status_changed(
                actor_id=partner_id,
                owner_id=grant.owner_id,
                grant_id=grant_id,
                status=status.value,
            )
        return updated

    async def change_access_level(
        self,
        owner_id: int,
        grant_id: int,
        access_level: AccessLevel,
    ) -> Optional[SharedAccess]:
        """
        Raises:
            AccessDeniedError: The partner tried to raise their own level
        """
        access_level = AccessLevel(access_level)
        grant = await self._storage.get_shared_access_by_id(grant_id)
        if grant is None or not grant.involves(owner_id):
            return None
        if grant.owner_id != owner_id:
            raise AccessDeniedError(owner_id, grant.owner_id, AccessIntent.WRITE)

        updated = await self._storage.update_shared_access_level(grant_id, access_level)
        if updated is not None and self._audit_logger:
            await self._audit_logger.log_grant_level_changed(
                owner_id=owner_id,
                grant_id=grant_id,
                access_level=access_level.value,
            )
        return updated

    async def revoke(self, user_id: int, grant_id: int) -> bool:
        """Either party can end a grant."""
        grant = await self._storage.get_shared_access_by_id(grant_id)
        if grant is None or not grant.involves(user_id):
            return False

        deleted = await self._storage.delete_shared_access(grant_id)
        if deleted and self._audit_logger:
            await self._audit_logger.log_grant_revoked(
                actor_id=user_id,
                owner_id=grant.owner_id,
                grant_id=grant_id,
            )
        return deleted


class InvitationFlow:
    """
    Orchestrates invitations by email.

    Flow:
    1. Invite -> token with an expiry
    2. Inspect -> the invitee looks at the offer
    3. Accept -> single use, becomes an ACCEPTED grant

    An invitation is redeemable at most once.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        expiry_days: int = 7,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._expiry = timedelta(days=expiry_days)

    async def invite(
        self,
        user_id: int,
        email: str,
        access_level: AccessLevel = AccessLevel.VIEW,
    ) -> Invitation:
        """
        Raises:
            SharingValidationError: Unknown inviter or malformed email
        """
        invitation = await self._storage.create_invitation(
            InvitationCreate(
                user_id=user_id,
                email=email,
                token=secrets.token_hex(32),
                access_level=access_level,
                expires_at=datetime.utcnow() + self._expiry,
            )
        )
        if self._audit_logger:
            await self._audit_logger.log_invitation_created(user_id, invitation.id)
        return invitation

    async def list_invitations(self, user_id: int) -> list[Invitation]:
        return await self._storage.get_invitations(user_id)

    async def inspect(self, token: str) -> Optional[Invitation]:
        """
        Look up a redeemable invitation.

        Raises:
            InvitationUnavailableError: It was used or has expired
        """
        invitation = await self._storage.get_invitation_by_token(token)
        if invitation is None:
            return None
        if invitation.is_used:
            raise InvitationUnavailableError(InvitationUnavailableError.USED)
        if invitation.is_expired():
            raise InvitationUnavailableError(InvitationUnavailableError.EXPIRED)
        return invitation

    async def accept(self, user_id: int, token: str) -> Optional[SharedAccess]:
        """
        Redeem an invitation into an accepted grant from the inviter to ``user_id``.

        Flow:
        1. Write the grant, already accepted. A grant conflict fails here
           and leaves the invitation redeemable.
        2. Consume the invitation. Only one caller can; a loser removes
           the grant it wrote in step 1.

        Raises:
            InvitationUnavailableError: Used or expired
            SharingValidationError: Accepting your own invitation, or unknown user
            DuplicateSharedAccessError: The inviter already shares with this user
        """
        invitation = await self.inspect(token)
        if invitation is None:
            return None

        owner_id = invitation.user_id
        if owner_id == user_id:
            raise SharingValidationError(ValidationRule.SELF_SHARE, "user_id")
        if await self._storage.get_user(user_id) is None:
            raise SharingValidationError(ValidationRule.PARTNER_NOT_FOUND, "user_id")

        grant = await self._storage.create_shared_access(
            SharedAccessCreate(
                owner_id=owner_id,
                partner_id=user_id,
                access_level=invitation.access_level,
                status=SharingStatus.ACCEPTED,
            )
        )

        try:
            used = await self._storage.use_invitation(invitation.id)
        except InvitationUnavailableError:
            await self._storage.delete_shared_access(grant.id)
            raise
        if used is None:
            # Cancelled between inspect and use
            await self._storage.delete_shared_access(grant.id)
            return None

        if self._audit_logger:
            await self._audit_logger.log_invitation_redeemed(
                partner_id=user_id,
                owner_id=owner_id,
                invitation_id=invitation.id,
                grant_id=grant.id,
            )
        return grant

    async def cancel(self, user_id: int, invitation_id: int) -> bool:
        """Inviter only. Returns False for someone else's invitation."""
        invitations = await self._storage.get_invitations(user_id)
        if not any(inv.id == invitation_id for inv in invitations):
            return False

        deleted = await self._storage.delete_invitation(invitation_id)
        if deleted and self._audit_logger:
            await self._audit_logger.log_invitation_cancelled(user_id, invitation_id)
        return deleted


async def create_app_components(
    settings: Optional[Settings] = None,
) -> tuple[TransactionFlow, SharingFlow, InvitationFlow, StorageInterface]:
    """
    Factory function to create all application components.

    The storage backend is resolved here, once, before anything is served.

    Returns:
        (transaction_flow, sharing_flow, invitation_flow, storage)
    """
    settings = settings or get_settings()
    app = settings.app

    configure_logging("DEBUG" if app.debug_mode else app.log_level)
    logger.info(
        "app_starting",
        environment=app.app_environment,
        storage_backend=app.storage_backend,
    )
    audit_logger = AuditLogger()

    storage = await initialize_storage(settings, audit_logger=audit_logger)

    transaction_flow = TransactionFlow(
        storage,
        audit_logger=audit_logger,
        max_import_batch_size=app.max_import_batch_size,
        derive_missing_hashes=app.derive_import_hashes,
    )
    sharing_flow = SharingFlow(storage, audit_logger=audit_logger)
    invitation_flow = InvitationFlow(
        storage,
        audit_logger=audit_logger,
        expiry_days=app.invitation_expiry_days,
    )

    return transaction_flow, sharing_flow, invitation_flow, storage
