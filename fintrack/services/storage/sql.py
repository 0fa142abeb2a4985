"""
Relational Storage Implementation (SQLAlchemy Core)

DESIGN DECISION: SQLAlchemy Core rather than the ORM because:
1. Records are already Pydantic models; a second object layer adds nothing
2. Every statement is explicit, so the column a field lands in is obvious
3. The same code runs on SQLite (tests, single user) and PostgreSQL

Every mutation runs inside ONE database transaction (engine.begin()).
Existence checks, uniqueness checks and the write itself commit together
or not at all. Unique constraints in the schema back up the in-code
checks, and a constraint violation is translated into the same conflict
error the in-memory backend raises.

TRADEOFFS:
- Calls are synchronous under an async signature. Fine for a personal
  finance workload; swap in an async driver if that changes.
- Numeric columns come back as Decimal via the driver, so amounts keep
  their two decimal places on every backend.
"""

from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterator, Optional

import structlog
from sqlalchemy import (
    Column,
    create_engine,
    delete,
    event,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from fintrack.config import DatabaseSettings
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
    StorageError,
    StorageInterface,
    StorageUnavailableError,
    UsernameTakenError,
)
from fintrack.services.storage.schema import (
    INVITATION_COLUMNS,
    SHARED_ACCESS_COLUMNS,
    TRANSACTION_COLUMNS,
    USER_COLUMNS,
    invitations,
    metadata,
    shared_access,
    transactions,
    users,
)
from fintrack.validation import (
    SharingValidationError,
    TransactionValidator,
    UserValidator,
    ValidationRule,
    changed_fields,
    is_valid_email,
)


logger = structlog.get_logger(__name__)

# Failures that mean "the database could not be reached in time"
_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def create_storage_engine(settings: DatabaseSettings) -> Engine:
    """
    Build an engine from database settings.

    Bounded waits everywhere: pool checkout uses pool_timeout and new
    connections use the driver's connect timeout.
    """
    if not settings.is_configured:
        raise StorageError("DATABASE_URL is not set")

    url = make_url(settings.url)

    if settings.is_sqlite:
        # sqlite3 calls its lock wait "timeout"
        engine = create_engine(
            url,
            echo=settings.echo,
            connect_args={"timeout": settings.connect_timeout_seconds},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout_seconds,
        pool_pre_ping=True,
        connect_args={"connect_timeout": settings.connect_timeout_seconds},
    )


def _to_column_values(columns: dict[str, Column], fields: dict[str, Any]) -> dict[Column, Any]:
    """Translate record fields into column values. Enums are stored by value."""
    values = {}
    for name, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        values[columns[name]] = value
    return values


def _conflict_from(error: IntegrityError) -> Exception:
    """Name the unique key a constraint violation hit."""
    detail = str(error.orig).lower()
    if "import_hash" in detail:
        return DuplicateImportHashError(import_hash="")
    if "username" in detail:
        return UsernameTakenError(username="")
    if "email" in detail:
        return EmailTakenError(email="")
    if "token" in detail:
        return DuplicateInvitationTokenError()
    return StorageError(f"Integrity error: {error.orig}")


class SqlStorage(StorageInterface):
    """
    Relational storage for users, transactions and sharing.

    Ids come from the database and are never reused.
    """

    backend_name = "sql"

    def __init__(self, engine: Engine, create_schema: bool = True):
        self._engine = engine
        self._transaction_validator = TransactionValidator()
        self._user_validator = UserValidator()
        if create_schema:
            self.create_schema()

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "SqlStorage":
        return cls(create_storage_engine(settings))

    @classmethod
    def from_url(cls, url: str) -> "SqlStorage":
        return cls.from_settings(DatabaseSettings(url=url))

    def create_schema(self) -> None:
        """Create missing tables. Existing tables are left alone."""
        with self._unavailable_on_failure("create_schema"):
            metadata.create_all(self._engine)

    async def ping(self) -> bool:
        with self._connection("ping") as conn:
            conn.execute(text("SELECT 1"))
        return True

    async def close(self) -> None:
        self._engine.dispose()

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    @contextmanager
    def _unavailable_on_failure(self, operation: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError:
            raise
        except _UNAVAILABLE_ERRORS as e:
            logger.warning("storage_unavailable", operation=operation, error=str(e))
            raise StorageUnavailableError(f"Database unavailable during {operation}: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("storage_unavailable", operation=operation, error=str(e))
                raise StorageUnavailableError(
                    f"Database connection lost during {operation}: {e}"
                ) from e
            raise StorageError(f"Database error during {operation}: {e}") from e

    @contextmanager
    def _connection(self, operation: str) -> Iterator[Connection]:
        """Read-only connection."""
        with self._unavailable_on_failure(operation):
            with self._engine.connect() as conn:
                yield conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Connection]:
        """
        Connection inside a database transaction.

        Commits on success. Any exception, including validation and
        conflict errors raised by our own checks, rolls everything back.
        """
        try:
            with self._unavailable_on_failure(operation):
                with self._engine.begin() as conn:
                    yield conn
        except IntegrityError as e:
            raise _conflict_from(e) from e

    # =========================================================================
    # USERS
    # =========================================================================

    async def create_user(self, user: UserCreate) -> User:
        fields = self._user_validator.validate_create(user)
        with self._transaction("create_user") as conn:
            self._check_user_unique(conn, fields, user_id=None)
            result = conn.execute(
                insert(users).values(
                    _to_column_values(USER_COLUMNS, {**fields, "created_at": datetime.utcnow()})
                )
            )
            return self._fetch_user(conn, result.inserted_primary_key[0])

    async def get_user(self, user_id: int) -> Optional[User]:
        with self._connection("get_user") as conn:
            return self._fetch_user(conn, user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connection("get_user_by_username") as conn:
            row = conn.execute(select(users).where(users.c.username == username)).first()
        return User.model_validate(row._asdict()) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connection("get_user_by_email") as conn:
            row = conn.execute(select(users).where(users.c.email == email)).first()
        return User.model_validate(row._asdict()) if row else None

    async def update_user(self, user_id: int, patch: UserPatch) -> Optional[User]:
        with self._transaction("update_user") as conn:
            current = self._fetch_user(conn, user_id)
            if current is None:
                return None

            changes = self._user_validator.validate_patch(patch)
            if not changes:
                return current

            self._check_user_unique(conn, changes, user_id=user_id)
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(_to_column_values(USER_COLUMNS, changes))
            )
            return self._fetch_user(conn, user_id)

    def _fetch_user(self, conn: Connection, user_id: int) -> Optional[User]:
        row = conn.execute(select(users).where(users.c.id == user_id)).first()
        return User.model_validate(row._asdict()) if row else None

    def _user_exists(self, conn: Connection, user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        found = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
        return found is not None

    def _check_user_unique(self, conn: Connection, fields: dict, user_id: Optional[int]) -> None:
        username = fields.get("username")
        if username is not None:
            holder = conn.execute(
                select(users.c.id).where(users.c.username == username)
            ).scalar()
            if holder is not None and holder != user_id:
                raise UsernameTakenError(username)

        email = fields.get("email")
        if email is not None:
            holder = conn.execute(select(users.c.id).where(users.c.email == email)).scalar()
            if holder is not None and holder != user_id:
                raise EmailTakenError(email)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def create_transaction(self, transaction: TransactionCreate) -> Transaction:
        with self._transaction("create_transaction") as conn:
            candidate = self._validate_new(conn, transaction)
            self._check_import_hash(conn, candidate.import_hash, transaction_id=None)
            return self._insert_transaction(conn, candidate)

    async def create_many_transactions(
        self,
        transactions: list[TransactionCreate],
    ) -> list[Transaction]:
        with self._transaction("create_many_transactions") as conn:
            candidates = [self._validate_new(conn, item) for item in transactions]

            batch_hashes: set[str] = set()
            for candidate in candidates:
                import_hash = candidate.import_hash
                if import_hash is None:
                    continue
                self._check_import_hash(conn, import_hash, transaction_id=None)
                if import_hash in batch_hashes:
                    raise DuplicateImportHashError(import_hash)
                batch_hashes.add(import_hash)

            return [self._insert_transaction(conn, c) for c in candidates]

    async def get_transaction_by_id(self, transaction_id: int) -> Optional[Transaction]:
        with self._connection("get_transaction_by_id") as conn:
            return self._fetch_transaction(conn, transaction_id)

    async def update_transaction(
        self,
        transaction_id: int,
        patch: TransactionPatch,
    ) -> Optional[Transaction]:
        with self._transaction("update_transaction") as conn:
            current = self._fetch_transaction(conn, transaction_id)
            if current is None:
                return None
            if patch.is_empty:
                return current

            candidate = self._transaction_validator.validate_patch(current, patch)
            changes = changed_fields(current, candidate)
            if not changes:
                return current

            if "import_hash" in changes:
                self._check_import_hash(conn, changes["import_hash"], transaction_id=transaction_id)

            conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(_to_column_values(TRANSACTION_COLUMNS, changes))
            )
            return self._fetch_transaction(conn, transaction_id)

    async def delete_transaction(self, transaction_id: int) -> bool:
        with self._transaction("delete_transaction") as conn:
            result = conn.execute(delete(transactions).where(transactions.c.id == transaction_id))
            return result.rowcount > 0

    async def get_transactions(self, user_id: int) -> list[Transaction]:
        return self._select_transactions(
            "get_transactions",
            transactions.c.user_id == user_id,
        )

    async def get_transactions_by_date_range(
        self,
        user_id: int,
        start_date: date,
        end_date: date,
    ) -> list[Transaction]:
        return self._select_transactions(
            "get_transactions_by_date_range",
            transactions.c.user_id == user_id,
            transactions.c.date >= start_date,
            transactions.c.date <= end_date,
        )

    async def get_transactions_by_category(
        self,
        user_id: int,
        category: str,
    ) -> list[Transaction]:
        return self._select_transactions(
            "get_transactions_by_category",
            transactions.c.user_id == user_id,
            transactions.c.category == category,
        )

    async def get_transactions_by_budget_month(
        self,
        user_id: int,
        month: int,
        year: int,
    ) -> list[Transaction]:
        return self._select_transactions(
            "get_transactions_by_budget_month",
            transactions.c.user_id == user_id,
            transactions.c.budget_month == month,
            transactions.c.budget_year == year,
        )

    async def get_transaction_by_import_hash(self, import_hash: str) -> Optional[Transaction]:
        if not import_hash:
            return None
        with self._connection("get_transaction_by_import_hash") as conn:
            return self._fetch_transaction_by_hash(conn, import_hash)

    def _validate_new(self, conn: Connection, transaction: TransactionCreate) -> NewTransaction:
        return self._transaction_validator.validate_create(
            transaction,
            user_exists=self._user_exists(conn, transaction.user_id),
        )

    def _check_import_hash(
        self,
        conn: Connection,
        import_hash: Optional[str],
        transaction_id: Optional[int],
    ) -> None:
        if not import_hash:
            return
        existing = self._fetch_transaction_by_hash(conn, import_hash)
        if existing is not None and existing.id != transaction_id:
            raise DuplicateImportHashError(import_hash, existing)

    def _insert_transaction(self, conn: Connection, candidate: NewTransaction) -> Transaction:
        fields = {**candidate.model_dump(), "created_at": datetime.utcnow()}
        result = conn.execute(
            insert(transactions).values(_to_column_values(TRANSACTION_COLUMNS, fields))
        )
        return self._fetch_transaction(conn, result.inserted_primary_key[0])

    def _fetch_transaction(self, conn: Connection, transaction_id: int) -> Optional[Transaction]:
        row = conn.execute(
            select(transactions).where(transactions.c.id == transaction_id)
        ).first()
        return Transaction.model_validate(row._asdict()) if row else None

    def _fetch_transaction_by_hash(self, conn: Connection, import_hash: str) -> Optional[Transaction]:
        row = conn.execute(
            select(transactions).where(transactions.c.import_hash == import_hash)
        ).first()
        return Transaction.model_validate(row._asdict()) if row else None

    def _select_transactions(self, operation: str, *conditions) -> list[Transaction]:
        query = (
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )
        with self._connection(operation) as conn:
            rows = conn.execute(query).all()
        return [Transaction.model_validate(row._asdict()) for row in rows]

    # =========================================================================
    # SHARED ACCESS
    # =========================================================================

    async def create_shared_access(self, access: SharedAccessCreate) -> SharedAccess:
        if access.owner_id == access.partner_id:
            raise SharingValidationError(ValidationRule.SELF_SHARE, "partner_id")

        with self._transaction("create_shared_access") as conn:
            if not self._user_exists(conn, access.owner_id):
                raise SharingValidationError(ValidationRule.OWNER_NOT_FOUND, "owner_id")
            if not self._user_exists(conn, access.partner_id):
                raise SharingValidationError(ValidationRule.PARTNER_NOT_FOUND, "partner_id")

            if self._fetch_grant_by_pair(conn, access.owner_id, access.partner_id) is not None:
                raise DuplicateSharedAccessError(access.owner_id, access.partner_id)

            now = datetime.utcnow()
            fields = {
                "owner_id": access.owner_id,
                "partner_id": access.partner_id,
                "access_level": access.access_level,
                "status": access.status,
                "invite_date": now,
                "accepted_date": now if access.status == SharingStatus.ACCEPTED else None,
            }
            try:
                result = conn.execute(
                    insert(shared_access).values(_to_column_values(SHARED_ACCESS_COLUMNS, fields))
                )
            except IntegrityError as e:
                # Lost a race with a concurrent grant for the same pair
                raise DuplicateSharedAccessError(access.owner_id, access.partner_id) from e
            return self._fetch_grant(conn, result.inserted_primary_key[0])

    async def get_shared_access_by_id(self, access_id: int) -> Optional[SharedAccess]:
        with self._connection("get_shared_access_by_id") as conn:
            return self._fetch_grant(conn, access_id)

    async def get_shared_access_by_owner_and_partner(
        self,
        owner_id: int,
        partner_id: int,
    ) -> Optional[SharedAccess]:
        with self._connection("get_shared_access_by_owner_and_partner") as conn:
            return self._fetch_grant_by_pair(conn, owner_id, partner_id)

    async def update_shared_access_status(
        self,
        access_id: int,
        status: SharingStatus,
    ) -> Optional[SharedAccess]:
        status = SharingStatus(status)
        with self._transaction("update_shared_access_status") as conn:
            current = self._fetch_grant(conn, access_id)
            if current is None:
                return None

            changes: dict = {"status": status}
            if status == SharingStatus.ACCEPTED and current.status != SharingStatus.ACCEPTED:
                changes["accepted_date"] = datetime.utcnow()

            conn.execute(
                update(shared_access)
                .where(shared_access.c.id == access_id)
                .values(_to_column_values(SHARED_ACCESS_COLUMNS, changes))
            )
            return self._fetch_grant(conn, access_id)

    async def update_shared_access_level(
        self,
        access_id: int,
        access_level: AccessLevel,
    ) -> Optional[SharedAccess]:
        access_level = AccessLevel(access_level)
        with self._transaction("update_shared_access_level") as conn:
            result = conn.execute(
                update(shared_access)
                .where(shared_access.c.id == access_id)
                .values(_to_column_values(SHARED_ACCESS_COLUMNS, {"access_level": access_level}))
            )
            if result.rowcount == 0:
                return None
            return self._fetch_grant(conn, access_id)

    async def delete_shared_access(self, access_id: int) -> bool:
        with self._transaction("delete_shared_access") as conn:
            result = conn.execute(delete(shared_access).where(shared_access.c.id == access_id))
            return result.rowcount > 0

    async def get_shared_accesses(self, user_id: int) -> list[SharedAccess]:
        query = (
            select(shared_access)
            .where(or_(shared_access.c.owner_id == user_id, shared_access.c.partner_id == user_id))
            .order_by(shared_access.c.id)
        )
        with self._connection("get_shared_accesses") as conn:
            rows = conn.execute(query).all()
        return [SharedAccess.model_validate(row._asdict()) for row in rows]

    def _fetch_grant(self, conn: Connection, access_id: int) -> Optional[SharedAccess]:
        row = conn.execute(select(shared_access).where(shared_access.c.id == access_id)).first()
        return SharedAccess.model_validate(row._asdict()) if row else None

    def _fetch_grant_by_pair(
        self,
        conn: Connection,
        owner_id: int,
        partner_id: int,
    ) -> Optional[SharedAccess]:
        row = conn.execute(
            select(shared_access).where(
                shared_access.c.owner_id == owner_id,
                shared_access.c.partner_id == partner_id,
            )
        ).first()
        return SharedAccess.model_validate(row._asdict()) if row else None

    # =========================================================================
    # INVITATIONS
    # =========================================================================

    async def create_invitation(self, invitation: InvitationCreate) -> Invitation:
        with self._transaction("create_invitation") as conn:
            if not self._user_exists(conn, invitation.user_id):
                raise SharingValidationError(ValidationRule.OWNER_NOT_FOUND, "user_id")
            email = invitation.email.strip()
            if not is_valid_email(email):
                raise SharingValidationError(ValidationRule.INVALID_EMAIL_FORMAT, "email")
            if self._fetch_invitation_by_token(conn, invitation.token) is not None:
                raise DuplicateInvitationTokenError()

            fields = {
                "user_id": invitation.user_id,
                "email": email,
                "token": invitation.token,
                "access_level": invitation.access_level,
                "expires_at": invitation.expires_at,
                "created_at": datetime.utcnow(),
            }
            result = conn.execute(
                insert(invitations).values(_to_column_values(INVITATION_COLUMNS, fields))
            )
            return self._fetch_invitation(conn, result.inserted_primary_key[0])

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connection("get_invitation_by_token") as conn:
            return self._fetch_invitation_by_token(conn, token)

    async def use_invitation(self, invitation_id: int) -> Optional[Invitation]:
        now = datetime.utcnow()
        with self._transaction("use_invitation") as conn:
            current = self._fetch_invitation(conn, invitation_id)
            if current is None:
                return None
            if current.is_used:
                raise InvitationUnavailableError(InvitationUnavailableError.USED)
            if current.is_expired(now):
                raise InvitationUnavailableError(InvitationUnavailableError.EXPIRED)

            # Conditional update: only one caller can flip used_at
            result = conn.execute(
                update(invitations)
                .where(invitations.c.id == invitation_id, invitations.c.used_at.is_(None))
                .values(_to_column_values(INVITATION_COLUMNS, {"used_at": now}))
            )
            if result.rowcount == 0:
                raise InvitationUnavailableError(InvitationUnavailableError.USED)
            return self._fetch_invitation(conn, invitation_id)

    async def delete_invitation(self, invitation_id: int) -> bool:
        with self._transaction("delete_invitation") as conn:
            result = conn.execute(delete(invitations).where(invitations.c.id == invitation_id))
            return result.rowcount > 0

    async def get_invitations(self, user_id: int) -> list[Invitation]:
        query = select(invitations).where(invitations.c.user_id == user_id).order_by(invitations.c.id)
        with self._connection("get_invitations") as conn:
            rows = conn.execute(query).all()
        return [Invitation.model_validate(row._asdict()) for row in rows]

    def _fetch_invitation(self, conn: Connection, invitation_id: int) -> Optional[Invitation]:
        row = conn.execute(select(invitations).where(invitations.c.id == invitation_id)).first()
        return Invitation.model_validate(row._asdict()) if row else None

    def _fetch_invitation_by_token(self, conn: Connection, token: str) -> Optional[Invitation]:
        row = conn.execute(select(invitations).where(invitations.c.token == token)).first()
        return Invitation.model_validate(row._asdict()) if row else None
