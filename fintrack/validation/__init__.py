"""Validation package."""

from fintrack.validation.validator import (
    MONEY_LIMIT,
    RULE_MESSAGES,
    SharingValidationError,
    TransactionValidationError,
    TransactionValidator,
    UserValidationError,
    UserValidator,
    ValidationFailedError,
    ValidationRule,
    changed_fields,
    is_valid_email,
    parse_calendar_date,
    parse_money,
)

__all__ = [
    "MONEY_LIMIT",
    "RULE_MESSAGES",
    "SharingValidationError",
    "TransactionValidationError",
    "TransactionValidator",
    "UserValidationError",
    "UserValidator",
    "ValidationFailedError",
    "ValidationRule",
    "changed_fields",
    "is_valid_email",
    "parse_calendar_date",
    "parse_money",
]
