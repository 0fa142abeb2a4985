"""
Abstract Storage Interface

DESIGN DECISION: We define one abstract contract for everything the
engine persists. Two implementations exist:
1. InMemoryStorage - reference implementation, used in tests and as the
   fallback when the database is unreachable at startup
2. SqlStorage - relational implementation for production

Both must behave identically for identical inputs. The parity test
suite runs the same scenarios against each.

Conventions every implementation follows:
- Lookups return None when nothing matches. Absent is not an error.
- Updates of a missing id return None; deletes of a missing id return False.
- An empty patch is a no-op that returns the current record.
- Bad input raises a ValidationFailedError subclass carrying the rule.
- Collisions with existing state raise a ConflictError subclass.
- Infrastructure failures raise StorageUnavailableError (safe to retry).
- Transaction lists are ordered by date descending, then id descending.
  Grants and invitations are ordered by id ascending.
"""

from abc import ABC, abstractmethod
from datetime import date
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
    Transaction,
    TransactionCreate,
    TransactionPatch,
)
from fintrack.models.user import User, UserCreate, UserPatch


class UserStorageInterface(ABC):
    """Users are created once, updated in place and never deleted."""

    @abstractmethod
    async def create_user(self, user: UserCreate) -> User:
        """
        Create a user and assign the next id.

        Raises:
            UserValidationError: If username/password are empty or the email is malformed
            UsernameTakenError: If the username is in use
            EmailTakenError: If the email is in use
        """
        pass

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]:
        pass

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def update_user(self, user_id: int, patch: UserPatch) -> Optional[User]:
        """
        Merge the supplied fields into a user.

        Returns:
            The updated user, or None if it doesn't exist

        Raises:
            UserValidationError, UsernameTakenError, EmailTakenError
        """
        pass


class TransactionStorageInterface(ABC):
    """
    Transactions are owned by exactly one user.

    Every write is validated by the backend itself, and every
    non-empty import hash is unique across all transactions.
    """

    @abstractmethod
    async def create_transaction(self, transaction: TransactionCreate) -> Transaction:
        """
        Validate and store one transaction.

        Raises:
            TransactionValidationError: On the first violated rule
            DuplicateImportHashError: If the import hash is already stored
                (the existing record is attached to the error)
        """
        pass

    @abstractmethod
    async def create_many_transactions(
        self,
        transactions: list[TransactionCreate],
    ) -> list[Transaction]:
        """
        Store a batch atomically: all records or none.

        Callers filter out bad rows beforehand (see the import flow).
        Anything that still fails here aborts the whole batch.

        Returns:
            Created transactions, in input order

        Raises:
            TransactionValidationError, DuplicateImportHashError
        """
        pass

    @abstractmethod
    async def get_transaction_by_id(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: int,
        patch: TransactionPatch,
    ) -> Optional[Transaction]:
        """
        Merge the supplied fields into a transaction.

        Omitted fields keep their values; ``created_at`` never changes.

        Returns:
            The updated transaction, or None if it doesn't exist

        Raises:
            TransactionValidationError, DuplicateImportHashError
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: int) -> bool:
        """Hard delete. Returns False when nothing was deleted."""
        pass

    @abstractmethod
    async def get_transactions(self, user_id: int) -> list[Transaction]:
        pass

    @abstractmethod
    async def get_transactions_by_date_range(
        self,
        user_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Transaction]:
        """Transactions dated within [start_date, end_date], inclusive."""
        pass

    @abstractmethod
    async def get_transactions_by_category(
        self,
        user_id: int,
        category: str,
    ) -> list[Transaction]:
        """Exact category match."""
        pass

    @abstractmethod
    async def get_transactions_by_budget_month(
        self,
        user_id: int,
        month: int,
        year: int,
    ) -> list[Transaction]:
        """Transactions tagged with this budget period (not their calendar date)."""
        pass

    @abstractmethod
    async def get_transaction_by_import_hash(self, import_hash: str) -> Optional[Transaction]:
        pass


class SharingStorageInterface(ABC):
    """Sharing grants and the invitations that lead to them."""

    @abstractmethod
    async def create_shared_access(self, access: SharedAccessCreate) -> SharedAccess:
        """
        Create a grant in access.status, pending unless stated otherwise.
        An accepted grant gets its accepted_date stamped on creation.

        Raises:
            SharingValidationError: Self grant or unknown owner/partner
            DuplicateSharedAccessError: If the (owner, partner) pair already has a grant
        """
        pass

    @abstractmethod
    async def get_shared_access_by_id(self, access_id: int) -> Optional[SharedAccess]:
        pass

    @abstractmethod
    async def get_shared_access_by_owner_and_partner(
        self,
        owner_id: int,
        partner_id: int,
    ) -> Optional[SharedAccess]:
        """Direction matters: (owner, partner) is not (partner, owner)."""
        pass

    @abstractmethod
    async def update_shared_access_status(
        self,
        access_id: int,
        status: SharingStatus,
    ) -> Optional[SharedAccess]:
        """
        Set a grant's status.

        ``accepted_date`` is stamped when the status becomes accepted.
        """
        pass

    @abstractmethod
    async def update_shared_access_level(
        self,
        access_id: int,
        access_level: AccessLevel,
    ) -> Optional[SharedAccess]:
        pass

    @abstractmethod
    async def delete_shared_access(self, access_id: int) -> bool:
        pass

    @abstractmethod
    async def get_shared_accesses(self, user_id: int) -> list[SharedAccess]:
        """Grants where the user is either the owner or the partner."""
        pass

    @abstractmethod
    async def create_invitation(self, invitation: InvitationCreate) -> Invitation:
        """
        Raises:
            SharingValidationError: Unknown inviter or malformed email
            ConflictError: If the token is already in use
        """
        pass

    @abstractmethod
    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        pass

    @abstractmethod
    async def use_invitation(self, invitation_id: int) -> Optional[Invitation]:
        """
        Mark an invitation as used. Succeeds at most once per invitation.

        Returns:
            The used invitation, or None if it doesn't exist

        Raises:
            InvitationUnavailableError: If it was already used or has expired
        """
        pass

    @abstractmethod
    async def delete_invitation(self, invitation_id: int) -> bool:
        pass

    @abstractmethod
    async def get_invitations(self, user_id: int) -> list[Invitation]:
        """Invitations sent by the user."""
        pass


class StorageInterface(
    UserStorageInterface,
    TransactionStorageInterface,
    SharingStorageInterface,
):
    """The complete storage contract."""

    backend_name: str = "abstract"

    @abstractmethod
    async def ping(self) -> bool:
        """
        Check connectivity.

        Raises:
            StorageUnavailableError: If the backend can't be reached
        """
        pass

    async def close(self) -> None:
        """Release resources held by the backend."""
        return None


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageUnavailableError(StorageError):
    """
    Could not reach the storage backend, or it timed out.

    The only failure that is safe to retry.
    """
    pass


class ConflictError(Exception):
    """Well-formed input that collides with existing state."""
    pass


class UsernameTakenError(ConflictError):
    def __init__(self, username: str):
        self.username = username
        super().__init__("Username already exists")


class EmailTakenError(ConflictError):
    def __init__(self, email: str):
        self.email = email
        super().__init__("Email already exists")


class DuplicateImportHashError(ConflictError):
    """
    A transaction with this import hash is already stored.

    ``existing`` is the stored record when the backend could load it.
    Callers must not hand it to anyone without read access to its owner.
    """

    def __init__(self, import_hash: str, existing: Optional[Transaction] = None):
        self.import_hash = import_hash
        self.existing = existing
        super().__init__("Transaction with this import hash already exists")


class DuplicateSharedAccessError(ConflictError):
    def __init__(self, owner_id: int, partner_id: int):
        self.owner_id = owner_id
        self.partner_id = partner_id
        super().__init__("Shared access already exists for this partner")


class DuplicateInvitationTokenError(ConflictError):
    def __init__(self):
        super().__init__("Invitation token already exists")


class InvitationUnavailableError(ConflictError):
    """The invitation exists but can no longer be redeemed."""

    EXPIRED = "expired"
    USED = "used"

    def __init__(self, reason: str):
        self.reason = reason
        message = (
            "Invitation has expired"
            if reason == self.EXPIRED
            else "Invitation has already been used"
        )
        super().__init__(message)


class GrantStateError(ConflictError):
    """A grant transition that its current status doesn't allow."""

    def __init__(self, current: SharingStatus, requested: SharingStatus):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change shared access from {current.value} to {requested.value}"
        )
