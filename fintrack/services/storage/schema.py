"""
Relational Schema

Four tables keyed by surrogate integer ids:
users, transactions, shared_access, invitations.

Unique keys are enforced by the database as well as checked in code,
so two concurrent writers can never both win a race for the same key.

The field -> column maps below are the ONLY place where record field
names meet column identifiers. Inserts and patches both go through them.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)


metadata = MetaData()

# sqlite_autoincrement keeps SQLite from reusing the id of a deleted last row

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", Text, nullable=False),
    Column("password", Text, nullable=False),
    Column("name", Text),
    Column("email", Text),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("username", name="uq_users_username"),
    UniqueConstraint("email", name="uq_users_email"),
    sqlite_autoincrement=True,
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("description", Text, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("type", String(16), nullable=False),
    Column("category", Text, nullable=False),
    Column("subcategory", Text),
    Column("payment_method", Text),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("frequency", String(16)),
    Column("next_due_date", Date),
    Column("has_end_date", Boolean, nullable=False, default=False),
    Column("end_date", Date),
    Column("budget_month", Integer),
    Column("budget_year", Integer),
    Column("balance", Numeric(14, 2)),
    Column("reference", Text),
    Column("notes", Text),
    Column("import_hash", Text),
    Column("created_at", DateTime, nullable=False),
    Index("uq_transactions_import_hash", "import_hash", unique=True),
    Index("ix_transactions_user_date", "user_id", "date"),
    Index("ix_transactions_user_budget", "user_id", "budget_year", "budget_month"),
    sqlite_autoincrement=True,
)

shared_access = Table(
    "shared_access",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("partner_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("access_level", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("invite_date", DateTime, nullable=False),
    Column("accepted_date", DateTime),
    Index("uq_shared_access_owner_partner", "owner_id", "partner_id", unique=True),
    Index("ix_shared_access_partner", "partner_id"),
    sqlite_autoincrement=True,
)

invitations = Table(
    "invitations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("email", Text, nullable=False),
    Column("token", Text, nullable=False),
    Column("access_level", String(16), nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("used_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("token", name="uq_invitations_token"),
    sqlite_autoincrement=True,
)


# =============================================================================
# FIELD -> COLUMN MAPS
# =============================================================================

USER_COLUMNS = {
    "username": users.c.username,
    "password": users.c.password,
    "name": users.c.name,
    "email": users.c.email,
    "created_at": users.c.created_at,
}

TRANSACTION_COLUMNS = {
    "user_id": transactions.c.user_id,
    "date": transactions.c.date,
    "description": transactions.c.description,
    "amount": transactions.c.amount,
    "type": transactions.c.type,
    "category": transactions.c.category,
    "subcategory": transactions.c.subcategory,
    "payment_method": transactions.c.payment_method,
    "is_recurring": transactions.c.is_recurring,
    "frequency": transactions.c.frequency,
    "next_due_date": transactions.c.next_due_date,
    "has_end_date": transactions.c.has_end_date,
    "end_date": transactions.c.end_date,
    "budget_month": transactions.c.budget_month,
    "budget_year": transactions.c.budget_year,
    "balance": transactions.c.balance,
    "reference": transactions.c.reference,
    "notes": transactions.c.notes,
    "import_hash": transactions.c.import_hash,
    "created_at": transactions.c.created_at,
}

SHARED_ACCESS_COLUMNS = {
    "owner_id": shared_access.c.owner_id,
    "partner_id": shared_access.c.partner_id,
    "access_level": shared_access.c.access_level,
    "status": shared_access.c.status,
    "invite_date": shared_access.c.invite_date,
    "accepted_date": shared_access.c.accepted_date,
}

INVITATION_COLUMNS = {
    "user_id": invitations.c.user_id,
    "email": invitations.c.email,
    "token": invitations.c.token,
    "access_level": invitations.c.access_level,
    "expires_at": invitations.c.expires_at,
    "used_at": invitations.c.used_at,
    "created_at": invitations.c.created_at,
}
