"""
Transaction Models

These models define the record shapes for financial transactions.

There are three layers:
1. TransactionCreate / TransactionPatch - what callers send. Loose on purpose:
   a string that is not a date must reach the validator so it can be rejected
   with the right rule, not with a generic schema error.
2. NewTransaction - a validated, normalized record ready to be inserted.
3. Transaction - a stored record (id and created_at assigned by storage).

DESIGN DECISION: Field names are snake_case in Python and camelCase on the
wire (``budgetMonth``), via alias generation. Callers can use either.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Exactly one of income or expense."""
    INCOME = "income"
    EXPENSE = "expense"


class Frequency(str, Enum):
    """How often a recurring transaction repeats."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


# =============================================================================
# INPUT MODELS
# =============================================================================

class TransactionCreate(BaseModel):
    """
    A transaction as submitted by a caller (form, API or import row).

    Nothing here is trusted. See TransactionValidator.validate_create.
    """
    model_config = _WIRE_CONFIG

    user_id: Optional[int] = None
    date: Any = None
    description: Optional[str] = None
    amount: Any = None
    type: Any = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None

    # Recurrence
    is_recurring: bool = False
    frequency: Any = None
    next_due_date: Any = None
    has_end_date: bool = False
    end_date: Any = None

    # Budget bucketing, independent of the calendar date
    budget_month: Optional[int] = None
    budget_year: Optional[int] = None

    # Statement data
    balance: Any = None
    reference: Optional[str] = None
    notes: Optional[str] = None

    # Deduplication fingerprint
    import_hash: Optional[str] = None


class TransactionPatch(BaseModel):
    """
    Partial update of a transaction.

    Only explicitly supplied fields change. ``id``, ``user_id`` and
    ``created_at`` are not patchable and are simply not declared here.
    """
    model_config = _WIRE_CONFIG

    date: Any = None
    description: Optional[str] = None
    amount: Any = None
    type: Any = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None
    is_recurring: Optional[bool] = None
    frequency: Any = None
    next_due_date: Any = None
    has_end_date: Optional[bool] = None
    end_date: Any = None
    budget_month: Optional[int] = None
    budget_year: Optional[int] = None
    balance: Any = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    import_hash: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        """Supplied fields only."""
        return self.model_dump(exclude_unset=True)

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


# =============================================================================
# NORMALIZED RECORDS
# =============================================================================

class NewTransaction(BaseModel):
    """A validated transaction that has not been stored yet."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    user_id: int
    date: dt.date
    description: str = Field(..., min_length=1)
    amount: Decimal
    type: TransactionType
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None
    is_recurring: bool = False
    frequency: Optional[Frequency] = None
    next_due_date: Optional[dt.date] = None
    has_end_date: bool = False
    end_date: Optional[dt.date] = None
    budget_month: Optional[int] = None
    budget_year: Optional[int] = None
    balance: Optional[Decimal] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    import_hash: Optional[str] = None


class Transaction(NewTransaction):
    """
    A stored transaction.

    ``created_at`` is set once by storage and never changes.
    """

    id: int
    created_at: dt.datetime

    def belongs_to(self, user_id: int) -> bool:
        return self.user_id == user_id


# =============================================================================
# QUERY MODELS
# =============================================================================

class TransactionFilter(BaseModel):
    """
    Filter for listing one owner's transactions.

    Precedence: a complete date range wins, then category, then a
    complete budget period, else everything.
    """
    model_config = _WIRE_CONFIG

    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    category: Optional[str] = None
    budget_month: Optional[int] = Field(default=None, ge=1, le=12)
    budget_year: Optional[int] = None

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None and self.end_date is not None

    @property
    def has_budget_period(self) -> bool:
        return self.budget_month is not None and self.budget_year is not None
