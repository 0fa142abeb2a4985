"""
In-Memory Storage Implementation

Reference implementation of the storage contract. Used by the test suite
and as the automatic fallback when the database can't be reached at startup.

It is NOT a dumb cache: it runs the same validation and deduplication
as the relational backend, and raises the same errors.

CONCURRENCY: Not thread safe. Every mutation does its uniqueness checks,
id assignment and insert without awaiting in between, so on a single event
loop each write is one indivisible step. Use one writer at a time.

Records handed out are copies; mutating them never touches stored state.
"""

import itertools
from datetime import date, datetime
from typing import Optional

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
    TransactionPatch,
)
from fintrack.models.user import User, UserCreate, UserPatch
from fintrack.services.storage.interface import (
    DuplicateImportHashError,
    DuplicateInvitationTokenError,
    DuplicateSharedAccessError,
    EmailTakenError,
    InvitationUnavailableError,
    StorageInterface,
    UsernameTakenError,
)
from fintrack.validation import (
    SharingValidationError,
    TransactionValidator,
    UserValidator,
    ValidationRule,
    changed_fields,
    is_valid_email,
)


def _newest_first(transactions: list[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda t: (t.date, t.id), reverse=True)


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed storage.

    Each entity type has its own id counter. Ids start at 1, only move
    forward and are never reused, even after deletes.
    """

    backend_name = "memory"

    def __init__(self):
        self._users: dict[int, User] = {}
        self._transactions: dict[int, Transaction] = {}
        self._shared_access: dict[int, SharedAccess] = {}
        self._invitations: dict[int, Invitation] = {}

        self._user_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self._shared_access_ids = itertools.count(1)
        self._invitation_ids = itertools.count(1)

        # Unique keys -> owning id
        self._usernames: dict[str, int] = {}
        self._emails: dict[str, int] = {}
        self._import_hashes: dict[str, int] = {}
        self._grant_pairs: dict[tuple[int, int], int] = {}
        self._tokens: dict[str, int] = {}

        self._transaction_validator = TransactionValidator()
        self._user_validator = UserValidator()

    async def ping(self) -> bool:
        return True

    # =========================================================================
    # USERS
    # =========================================================================

    async def create_user(self, user: UserCreate) -> User:
        fields = self._user_validator.validate_create(user)
        self._check_user_unique(fields, user_id=None)

        user_id = next(self._user_ids)
        stored = User(id=user_id, created_at=datetime.utcnow(), **fields)
        self._users[user_id] = stored
        self._index_user(stored)
        return stored.model_copy()

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        user_id = self._usernames.get(username)
        return await self.get_user(user_id) if user_id is not None else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = self._emails.get(email)
        return await self.get_user(user_id) if user_id is not None else None

    async def update_user(self, user_id: int, patch: UserPatch) -> Optional[User]:
        current = self._users.get(user_id)
        if current is None:
            return None

        changes = self._user_validator.validate_patch(patch)
        if not changes:
            return current.model_copy()

        self._check_user_unique(changes, user_id=user_id)

        self._unindex_user(current)
        updated = current.model_copy(update=changes)
        self._users[user_id] = updated
        self._index_user(updated)
        return updated.model_copy()

    def _check_user_unique(self, fields: dict, user_id: Optional[int]) -> None:
        username = fields.get("username")
        if username is not None:
            holder = self._usernames.get(username)
            if holder is not None and holder != user_id:
                raise UsernameTakenError(username)

        email = fields.get("email")
        if email is not None:
            holder = self._emails.get(email)
            if holder is not None and holder != user_id:
                raise EmailTakenError(email)

    def _index_user(self, user: User) -> None:
        self._usernames[user.username] = user.id
        if user.email:
            self._emails[user.email] = user.id

    def _unindex_user(self, user: User) -> None:
        self._usernames.pop(user.username, None)
        if user.email:
            self._emails.pop(user.email, None)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def create_transaction(self, transaction: TransactionCreate) -> Transaction:
        candidate = self._validate_new(transaction)
        self._check_import_hash(candidate.import_hash, transaction_id=None)
        return self._insert_transaction(candidate).model_copy()

    async def create_many_transactions(
        self,
        transactions: list[TransactionCreate],
    ) -> list[Transaction]:
        # Everything is checked before anything is written
        candidates = [self._validate_new(item) for item in transactions]

        batch_hashes: set[str] = set()
        for candidate in candidates:
            import_hash = candidate.import_hash
            if import_hash is None:
                continue
            self._check_import_hash(import_hash, transaction_id=None)
            if import_hash in batch_hashes:
                raise DuplicateImportHashError(import_hash)
            batch_hashes.add(import_hash)

        return [self._insert_transaction(c).model_copy() for c in candidates]

    async def get_transaction_by_id(self, transaction_id: int) -> Optional[Transaction]:
        transaction = self._transactions.get(transaction_id)
        return transaction.model_copy() if transaction else None

    async def update_transaction(
        self,
        transaction_id: int,
        patch: TransactionPatch,
    ) -> Optional[Transaction]:
        current = self._transactions.get(transaction_id)
        if current is None:
            return None
        if patch.is_empty:
            return current.model_copy()

        candidate = self._transaction_validator.validate_patch(current, patch)
        changes = changed_fields(current, candidate)
        if not changes:
            return current.model_copy()

        if "import_hash" in changes:
            self._check_import_hash(changes["import_hash"], transaction_id=transaction_id)
            if current.import_hash:
                self._import_hashes.pop(current.import_hash, None)
            if changes["import_hash"]:
                self._import_hashes[changes["import_hash"]] = transaction_id

        updated = current.model_copy(update=changes)
        self._transactions[transaction_id] = updated
        return updated.model_copy()

    async def delete_transaction(self, transaction_id: int) -> bool:
        transaction = self._transactions.pop(transaction_id, None)
        if transaction is None:
            return False
        if transaction.import_hash:
            self._import_hashes.pop(transaction.import_hash, None)
        return True

    async def get_transactions(self, user_id: int) -> list[Transaction]:
        return self._select(lambda t: t.user_id == user_id)

    async def get_transactions_by_date_range(
        self,
        user_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Transaction]:
        return self._select(
            lambda t: t.user_id == user_id and start_date <= t.date <= end_date
        )

    async def get_transactions_by_category(
        self,
        user_id: int,
        category: str,
    ) -> list[Transaction]:
        return self._select(lambda t: t.user_id == user_id and t.category == category)

    async def get_transactions_by_budget_month(
        self,
        user_id: int,
        month: int,
        year: int,
    ) -> list[Transaction]:
        return self._select(
            lambda t: (
                t.user_id == user_id
                and t.budget_month == month
                and t.budget_year == year
            )
        )

    async def get_transaction_by_import_hash(self, import_hash: str) -> Optional[Transaction]:
        if not import_hash:
            return None
        transaction_id = self._import_hashes.get(import_hash)
        if transaction_id is None:
            return None
        return await self.get_transaction_by_id(transaction_id)

    def _validate_new(self, transaction: TransactionCreate) -> NewTransaction:
        return self._transaction_validator.validate_create(
            transaction,
            user_exists=transaction.user_id in self._users,
        )

    def _check_import_hash(self, import_hash: Optional[str], transaction_id: Optional[int]) -> None:
        if not import_hash:
            return
        holder = self._import_hashes.get(import_hash)
        if holder is not None and holder != transaction_id:
            existing = self._transactions[holder].model_copy()
            raise DuplicateImportHashError(import_hash, existing)

    def _insert_transaction(self, candidate: NewTransaction) -> Transaction:
        transaction_id = next(self._transaction_ids)
        stored = Transaction(
            id=transaction_id,
            created_at=datetime.utcnow(),
            **candidate.model_dump(),
        )
        self._transactions[transaction_id] = stored
        if stored.import_hash:
            self._import_hashes[stored.import_hash] = transaction_id
        return stored

    def _select(self, predicate) -> list[Transaction]:
        matches = [t for t in self._transactions.values() if predicate(t)]
        return [t.model_copy() for t in _newest_first(matches)]

    # =========================================================================
    # SHARED ACCESS
    # =========================================================================

    async def create_shared_access(self, access: SharedAccessCreate) -> SharedAccess:
        if access.owner_id == access.partner_id:
            raise SharingValidationError(ValidationRule.SELF_SHARE, "partner_id")
        if access.owner_id not in self._users:
            raise SharingValidationError(ValidationRule.OWNER_NOT_FOUND, "owner_id")
        if access.partner_id not in self._users:
            raise SharingValidationError(ValidationRule.PARTNER_NOT_FOUND, "partner_id")

        pair = (access.owner_id, access.partner_id)
        if pair in self._grant_pairs:
            raise DuplicateSharedAccessError(*pair)

        access_id = next(self._shared_access_ids)
        now = datetime.utcnow()
        stored = SharedAccess(
            id=access_id,
            owner_id=access.owner_id,
            partner_id=access.partner_id,
            access_level=access.access_level,
            status=access.status,
            invite_date=now,
            accepted_date=now if access.status == SharingStatus.ACCEPTED else None,
        )
        self._shared_access[access_id] = stored
        self._grant_pairs[pair] = access_id
        return stored.model_copy()

    async def get_shared_access_by_id(self, access_id: int) -> Optional[SharedAccess]:
        access = self._shared_access.get(access_id)
        return access.model_copy() if access else None

    async def get_shared_access_by_owner_and_partner(
        self,
        owner_id: int,
        partner_id: int,
    ) -> Optional[SharedAccess]:
        access_id = self._grant_pairs.get((owner_id, partner_id))
        if access_id is None:
            return None
        return await self.get_shared_access_by_id(access_id)

    async def update_shared_access_status(
        self,
        access_id: int,
        status: SharingStatus,
    ) -> Optional[SharedAccess]:
        status = SharingStatus(status)
        current = self._shared_access.get(access_id)
        if current is None:
            return None

        changes: dict = {"status": status}
        if status == SharingStatus.ACCEPTED and current.status != SharingStatus.ACCEPTED:
            changes["accepted_date"] = datetime.utcnow()

        updated = current.model_copy(update=changes)
        self._shared_access[access_id] = updated
        return updated.model_copy()

    async def update_shared_access_level(
        self,
        access_id: int,
        access_level: AccessLevel,
    ) -> Optional[SharedAccess]:
        access_level = AccessLevel(access_level)
        current = self._shared_access.get(access_id)
        if current is None:
            return None

        updated = current.model_copy(update={"access_level": access_level})
        self._shared_access[access_id] = updated
        return updated.model_copy()

    async def delete_shared_access(self, access_id: int) -> bool:
        access = self._shared_access.pop(access_id, None)
        if access is None:
            return False
        self._grant_pairs.pop((access.owner_id, access.partner_id), None)
        return True

    async def get_shared_accesses(self, user_id: int) -> list[SharedAccess]:
        return [
            access.model_copy()
            for _, access in sorted(self._shared_access.items())
            if access.involves(user_id)
        ]

    # =========================================================================
    # INVITATIONS
    # =========================================================================

    async def create_invitation(self, invitation: InvitationCreate) -> Invitation:
        if invitation.user_id not in self._users:
            raise SharingValidationError(ValidationRule.OWNER_NOT_FOUND, "user_id")
        email = invitation.email.strip()
        if not is_valid_email(email):
            raise SharingValidationError(ValidationRule.INVALID_EMAIL_FORMAT, "email")
        if invitation.token in self._tokens:
            raise DuplicateInvitationTokenError()

        invitation_id = next(self._invitation_ids)
        stored = Invitation(
            id=invitation_id,
            user_id=invitation.user_id,
            email=email,
            token=invitation.token,
            access_level=invitation.access_level,
            expires_at=invitation.expires_at,
            created_at=datetime.utcnow(),
        )
        self._invitations[invitation_id] = stored
        self._tokens[stored.token] = invitation_id
        return stored.model_copy()

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        invitation_id = self._tokens.get(token)
        if invitation_id is None:
            return None
        return self._invitations[invitation_id].model_copy()

    async def use_invitation(self, invitation_id: int) -> Optional[Invitation]:
        current = self._invitations.get(invitation_id)
        if current is None:
            return None

        now = datetime.utcnow()
        if current.is_used:
            raise InvitationUnavailableError(InvitationUnavailableError.USED)
        if current.is_expired(now):
            raise InvitationUnavailableError(InvitationUnavailableError.EXPIRED)

        updated = current.model_copy(update={"used_at": now})
        self._invitations[invitation_id] = updated
        return updated.model_copy()

    async def delete_invitation(self, invitation_id: int) -> bool:
        invitation = self._invitations.pop(invitation_id, None)
        if invitation is None:
            return False
        self._tokens.pop(invitation.token, None)
        return True

    async def get_invitations(self, user_id: int) -> list[Invitation]:
        return [
            invitation.model_copy()
            for _, invitation in sorted(self._invitations.items())
            if invitation.user_id == user_id
        ]
