"""
Record Validation

DESIGN DECISION: Every write runs through one validation pass that either
returns a normalized record or fails with a NAMED rule. Rules are evaluated
in a fixed order and the first violation wins, so the same bad input always
produces the same error:

1. UserNotFound            - referenced user must exist
2. InvalidDateFormat       - date must be a real YYYY-MM-DD calendar day
3. DescriptionRequired     - non-empty after trimming
4. CategoryRequired        - non-empty after trimming
5. InvalidAmount           - a finite number below MONEY_LIMIT in magnitude;
                             numeric strings are fine, anything else is
                             rejected outright
6. InvalidTransactionType  - exactly "income" or "expense"
7. Recurrence              - only checked when is_recurring is set:
                             InvalidFrequency, InvalidNextDueDate, InvalidEndDate

Period and statement checks (InvalidBudgetMonth, InvalidBudgetYear,
InvalidBalance) run after the recurrence rules.

IMPORTANT: Validation NEVER guesses. "12abc" is not 12.
Both storage backends call into this module, so they reject identically.
"""

import datetime as dt
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from fintrack.models.transaction import (
    Frequency,
    NewTransaction,
    Transaction,
    TransactionCreate,
    TransactionPatch,
    TransactionType,
)
from fintrack.models.user import UserCreate, UserPatch


class ValidationRule(str, Enum):
    """Identifiers of every validation rule. The value is the wire name."""
    # Transactions, in evaluation order
    USER_NOT_FOUND = "UserNotFound"
    INVALID_DATE_FORMAT = "InvalidDateFormat"
    DESCRIPTION_REQUIRED = "DescriptionRequired"
    CATEGORY_REQUIRED = "CategoryRequired"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_TRANSACTION_TYPE = "InvalidTransactionType"
    INVALID_FREQUENCY = "InvalidFrequency"
    INVALID_NEXT_DUE_DATE = "InvalidNextDueDate"
    INVALID_END_DATE = "InvalidEndDate"
    INVALID_BUDGET_MONTH = "InvalidBudgetMonth"
    INVALID_BUDGET_YEAR = "InvalidBudgetYear"
    INVALID_BALANCE = "InvalidBalance"

    # Users
    USERNAME_REQUIRED = "UsernameRequired"
    PASSWORD_REQUIRED = "PasswordRequired"
    INVALID_EMAIL_FORMAT = "InvalidEmailFormat"

    # Sharing
    SELF_SHARE = "SelfShare"
    OWNER_NOT_FOUND = "OwnerNotFound"
    PARTNER_NOT_FOUND = "PartnerNotFound"


RULE_MESSAGES: dict[ValidationRule, str] = {
    ValidationRule.USER_NOT_FOUND: "User not found",
    ValidationRule.INVALID_DATE_FORMAT: "Invalid date format, expected YYYY-MM-DD",
    ValidationRule.DESCRIPTION_REQUIRED: "Description is required",
    ValidationRule.CATEGORY_REQUIRED: "Category is required",
    ValidationRule.INVALID_AMOUNT: "Invalid amount",
    ValidationRule.INVALID_TRANSACTION_TYPE: "Invalid transaction type, expected income or expense",
    ValidationRule.INVALID_FREQUENCY: "Invalid frequency",
    ValidationRule.INVALID_NEXT_DUE_DATE: "Invalid next due date",
    ValidationRule.INVALID_END_DATE: "Invalid end date",
    ValidationRule.INVALID_BUDGET_MONTH: "Budget month must be between 1 and 12",
    ValidationRule.INVALID_BUDGET_YEAR: "Budget year must be between 1 and 9999",
    ValidationRule.INVALID_BALANCE: "Invalid balance",
    ValidationRule.USERNAME_REQUIRED: "Username cannot be empty",
    ValidationRule.PASSWORD_REQUIRED: "Password cannot be empty",
    ValidationRule.INVALID_EMAIL_FORMAT: "Invalid email format",
    ValidationRule.SELF_SHARE: "Cannot share data with yourself",
    ValidationRule.OWNER_NOT_FOUND: "Owner not found",
    ValidationRule.PARTNER_NOT_FOUND: "Partner not found",
}


class ValidationFailedError(Exception):
    """
    Base exception for rejected input.

    Always recoverable: the caller fixes the input and tries again.
    """

    def __init__(
        self,
        rule: ValidationRule,
        field: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.rule = rule
        self.field = field
        self.message = message or RULE_MESSAGES[rule]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "rule": self.rule.value,
            "field": self.field,
            "message": self.message,
        }


class TransactionValidationError(ValidationFailedError):
    """A transaction write broke a rule."""
    pass


class UserValidationError(ValidationFailedError):
    """A user write broke a rule."""
    pass


class SharingValidationError(ValidationFailedError):
    """A sharing grant or invitation broke a rule."""
    pass


# =============================================================================
# PRIMITIVE PARSERS - return None when the value is unusable
# =============================================================================

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CENTS = Decimal("0.01")

# Stored money has 12 integer digits and 2 decimals
MONEY_LIMIT = Decimal(10) ** 12
MAX_BUDGET_YEAR = 9999


def parse_calendar_date(value: Any) -> Optional[dt.date]:
    """Parse a real calendar day. 2023-02-30 is not one."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not _ISO_DATE.match(text):
        return None
    try:
        return dt.date.fromisoformat(text)
    except ValueError:
        return None


def parse_money(value: Any) -> Optional[Decimal]:
    """
    Parse a finite signed amount, rounded half-up to cents.

    Booleans are not numbers here, even though Python thinks they are.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        number = Decimal(repr(value))
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER.match(text):
            return None
        number = Decimal(text)
    else:
        return None

    if not number.is_finite():
        return None
    try:
        return number.quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL.match(value))


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


def _optional_text(value: Optional[str]) -> Optional[str]:
    text = _clean_text(value)
    return text or None


def _parse_enum(enum_cls: type[Enum], value: Any) -> Optional[Enum]:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionValidator:
    """
    Validates and normalizes transaction writes.

    The validator has no storage access. Callers resolve whether the
    referenced user exists and pass the answer in, so the check can run
    inside whatever transaction the backend is holding.
    """

    def validate_create(
        self,
        payload: TransactionCreate,
        user_exists: bool,
    ) -> NewTransaction:
        """
        Validate a new transaction.

        Raises:
            TransactionValidationError: on the first violated rule
        """
        if payload.user_id is None or not user_exists:
            raise TransactionValidationError(ValidationRule.USER_NOT_FOUND, "user_id")

        fields = payload.model_dump()
        return self._normalize(fields)

    def validate_patch(
        self,
        current: Transaction,
        patch: TransactionPatch,
    ) -> NewTransaction:
        """
        Validate the record that results from applying a patch.

        The owner is unchanged by a patch, so the user rule is skipped.
        Returns the full normalized record; the caller diffs it against
        ``current`` to find the columns that actually change.
        """
        fields = current.model_dump(exclude={"id", "created_at"})
        fields.update(patch.changes())
        return self._normalize(fields)

    def _normalize(self, fields: dict[str, Any]) -> NewTransaction:
        # Rule 2
        parsed_date = parse_calendar_date(fields.get("date"))
        if parsed_date is None:
            raise TransactionValidationError(ValidationRule.INVALID_DATE_FORMAT, "date")

        # Rules 3-4
        description = _clean_text(fields.get("description"))
        if not description:
            raise TransactionValidationError(ValidationRule.DESCRIPTION_REQUIRED, "description")

        category = _clean_text(fields.get("category"))
        if not category:
            raise TransactionValidationError(ValidationRule.CATEGORY_REQUIRED, "category")

        # Rule 5
        amount = parse_money(fields.get("amount"))
        if amount is None or abs(amount) >= MONEY_LIMIT:
            raise TransactionValidationError(ValidationRule.INVALID_AMOUNT, "amount")

        # Rule 6
        transaction_type = _parse_enum(TransactionType, fields.get("type"))
        if transaction_type is None:
            raise TransactionValidationError(ValidationRule.INVALID_TRANSACTION_TYPE, "type")

        # Rule 7 - recurrence fields are only checked on recurring transactions.
        # On one-off records a value that parses is kept, one that doesn't is dropped.
        is_recurring = bool(fields.get("is_recurring"))
        has_end_date = bool(fields.get("has_end_date"))
        raw_frequency = fields.get("frequency")
        raw_next_due = fields.get("next_due_date")
        raw_end_date = fields.get("end_date")
        frequency = _parse_enum(Frequency, raw_frequency)
        next_due_date = parse_calendar_date(raw_next_due)
        end_date = parse_calendar_date(raw_end_date)

        if is_recurring:
            if raw_frequency is not None and frequency is None:
                raise TransactionValidationError(ValidationRule.INVALID_FREQUENCY, "frequency")
            if raw_next_due is not None and next_due_date is None:
                raise TransactionValidationError(
                    ValidationRule.INVALID_NEXT_DUE_DATE, "next_due_date"
                )
            if has_end_date and raw_end_date is not None and end_date is None:
                raise TransactionValidationError(ValidationRule.INVALID_END_DATE, "end_date")

        # Period bucketing
        budget_month = fields.get("budget_month")
        if budget_month is not None and not 1 <= budget_month <= 12:
            raise TransactionValidationError(ValidationRule.INVALID_BUDGET_MONTH, "budget_month")

        budget_year = fields.get("budget_year")
        if budget_year is not None and not 1 <= budget_year <= MAX_BUDGET_YEAR:
            raise TransactionValidationError(ValidationRule.INVALID_BUDGET_YEAR, "budget_year")

        # Statement balance
        balance = None
        raw_balance = fields.get("balance")
        if raw_balance is not None:
            balance = parse_money(raw_balance)
            if balance is None or abs(balance) >= MONEY_LIMIT:
                raise TransactionValidationError(ValidationRule.INVALID_BALANCE, "balance")

        return NewTransaction(
            user_id=fields["user_id"],
            date=parsed_date,
            description=description,
            amount=amount,
            type=transaction_type,
            category=category,
            subcategory=_optional_text(fields.get("subcategory")),
            payment_method=_optional_text(fields.get("payment_method")),
            is_recurring=is_recurring,
            frequency=frequency,
            next_due_date=next_due_date,
            has_end_date=has_end_date,
            end_date=end_date,
            budget_month=budget_month,
            budget_year=budget_year,
            balance=balance,
            reference=_optional_text(fields.get("reference")),
            notes=_optional_text(fields.get("notes")),
            import_hash=_optional_text(fields.get("import_hash")),
        )


def changed_fields(current: Transaction, candidate: NewTransaction) -> dict[str, Any]:
    """Fields whose normalized value differs from the stored record."""
    changes = {}
    for name in NewTransaction.model_fields:
        new_value = getattr(candidate, name)
        if getattr(current, name) != new_value:
            changes[name] = new_value
    return changes


# =============================================================================
# USERS
# =============================================================================

class UserValidator:
    """Validates user writes."""

    def validate_create(self, payload: UserCreate) -> dict[str, Any]:
        """
        Returns the normalized user fields.

        Raises:
            UserValidationError: on the first violated rule
        """
        username = _clean_text(payload.username)
        if not username:
            raise UserValidationError(ValidationRule.USERNAME_REQUIRED, "username")

        if not payload.password:
            raise UserValidationError(ValidationRule.PASSWORD_REQUIRED, "password")

        email = self._normalize_email(payload.email)

        return {
            "username": username,
            "password": payload.password,
            "name": _optional_text(payload.name),
            "email": email,
        }

    def validate_patch(self, patch: UserPatch) -> dict[str, Any]:
        """Returns only the supplied fields, normalized."""
        supplied = patch.changes()
        changes: dict[str, Any] = {}

        if "username" in supplied:
            username = _clean_text(supplied["username"])
            if not username:
                raise UserValidationError(ValidationRule.USERNAME_REQUIRED, "username")
            changes["username"] = username

        if "password" in supplied:
            if not supplied["password"]:
                raise UserValidationError(ValidationRule.PASSWORD_REQUIRED, "password")
            changes["password"] = supplied["password"]

        if "email" in supplied:
            changes["email"] = self._normalize_email(supplied["email"])

        if "name" in supplied:
            changes["name"] = _optional_text(supplied["name"])

        return changes

    @staticmethod
    def _normalize_email(value: Optional[str]) -> Optional[str]:
        email = _optional_text(value)
        if email is not None and not is_valid_email(email):
            raise UserValidationError(ValidationRule.INVALID_EMAIL_FORMAT, "email")
        return email
