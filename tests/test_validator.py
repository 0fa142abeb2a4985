"""
Tests for record validation.

The validator is pure: no storage, no I/O. These tests pin down the
rule order and the normalization every backend relies on.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from fintrack.models import (
    Frequency,
    Transaction,
    TransactionCreate,
    TransactionPatch,
    TransactionType,
    UserCreate,
    UserPatch,
)
from fintrack.validation import (
    MONEY_LIMIT,
    RULE_MESSAGES,
    TransactionValidationError,
    TransactionValidator,
    UserValidationError,
    UserValidator,
    ValidationRule,
    changed_fields,
    is_valid_email,
    parse_calendar_date,
    parse_money,
)


def _payload(**overrides) -> TransactionCreate:
    fields = {
        "user_id": 1,
        "date": "2023-02-14",
        "description": "Coffee",
        "amount": "3.50",
        "type": "expense",
        "category": "Food",
    }
    fields.update(overrides)
    return TransactionCreate(**fields)


@pytest.fixture
def validator():
    return TransactionValidator()


class TestParsers:
    """Primitive parsers never guess."""

    @pytest.mark.parametrize("value,expected", [
        ("2023-02-14", date(2023, 2, 14)),
        (" 2024-02-29 ", date(2024, 2, 29)),
        (date(2023, 1, 1), date(2023, 1, 1)),
        (datetime(2023, 1, 1, 12, 30), date(2023, 1, 1)),
    ])
    def test_valid_dates(self, value, expected):
        assert parse_calendar_date(value) == expected

    @pytest.mark.parametrize("value", [
        "2023-02-30", "2023-13-01", "2023-2-14", "14/02/2023", "20230214",
        "2023-02-14T10:00:00", "", None, 20230214,
    ])
    def test_invalid_dates(self, value):
        assert parse_calendar_date(value) is None

    @pytest.mark.parametrize("value,expected", [
        ("100.50", Decimal("100.50")),
        ("-12", Decimal("-12.00")),
        ("1e3", Decimal("1000.00")),
        (".5", Decimal("0.50")),
        (0, Decimal("0.00")),
        (19.99, Decimal("19.99")),
        (Decimal("2.345"), Decimal("2.35")),
        ("0.005", Decimal("0.01")),
    ])
    def test_valid_money(self, value, expected):
        assert parse_money(value) == expected

    @pytest.mark.parametrize("value", [
        "12abc", "abc", "", "  ", "1,000", "NaN", "Infinity", float("nan"),
        float("inf"), Decimal("NaN"), True, False, None, [1],
    ])
    def test_invalid_money(self, value):
        assert parse_money(value) is None

    @pytest.mark.parametrize("value,expected", [
        ("a@b.co", True),
        ("first.last@example.com", True),
        ("no-at-sign.com", False),
        ("two@@example.com", False),
        ("user@nodot", False),
        ("spaces in@example.com", False),
    ])
    def test_email(self, value, expected):
        assert is_valid_email(value) is expected


class TestTransactionRules:
    """Ordered rules, first violation wins."""

    def test_valid_payload_is_normalized(self, validator):
        result = validator.validate_create(
            _payload(description="  Coffee  ", category=" Food ", notes="", reference="  "),
            user_exists=True,
        )

        assert result.description == "Coffee"
        assert result.category == "Food"
        assert result.amount == Decimal("3.50")
        assert result.type == TransactionType.EXPENSE
        assert result.notes is None
        assert result.reference is None

    def test_missing_user(self, validator):
        with pytest.raises(TransactionValidationError) as exc_info:
            validator.validate_create(_payload(), user_exists=False)
        assert exc_info.value.rule == ValidationRule.USER_NOT_FOUND
        assert exc_info.value.field == "user_id"

    def test_no_user_id(self, validator):
        with pytest.raises(TransactionValidationError) as exc_info:
            validator.validate_create(_payload(user_id=None), user_exists=True)
        assert exc_info.value.rule == ValidationRule.USER_NOT_FOUND

    @pytest.mark.parametrize("overrides,rule", [
        ({"date": "2023-02-30", "description": ""}, ValidationRule.INVALID_DATE_FORMAT),
        ({"description": "   ", "category": ""}, ValidationRule.DESCRIPTION_REQUIRED),
        ({"category": "", "amount": "x"}, ValidationRule.CATEGORY_REQUIRED),
        ({"amount": "12abc", "type": "transfer"}, ValidationRule.INVALID_AMOUNT),
        ({"type": "transfer", "is_recurring": True, "frequency": "hourly"},
         ValidationRule.INVALID_TRANSACTION_TYPE),
        ({"is_recurring": True, "frequency": "hourly", "next_due_date": "bad"},
         ValidationRule.INVALID_FREQUENCY),
        ({"is_recurring": True, "next_due_date": "bad", "budget_month": 13},
         ValidationRule.INVALID_NEXT_DUE_DATE),
        ({"is_recurring": True, "has_end_date": True, "end_date": "2023-04-31"},
         ValidationRule.INVALID_END_DATE),
        ({"budget_month": 13, "balance": "x"}, ValidationRule.INVALID_BUDGET_MONTH),
        ({"budget_month": 0}, ValidationRule.INVALID_BUDGET_MONTH),
        ({"budget_year": 0}, ValidationRule.INVALID_BUDGET_YEAR),
        ({"budget_year": 10000}, ValidationRule.INVALID_BUDGET_YEAR),
        ({"amount": "1000000000000.00"}, ValidationRule.INVALID_AMOUNT),
        ({"amount": "999999999999.995"}, ValidationRule.INVALID_AMOUNT),
        ({"balance": "-1000000000000"}, ValidationRule.INVALID_BALANCE),
        ({"balance": "lots"}, ValidationRule.INVALID_BALANCE),
    ])
    def test_first_violation_wins(self, validator, overrides, rule):
        with pytest.raises(TransactionValidationError) as exc_info:
            validator.validate_create(_payload(**overrides), user_exists=True)
        assert exc_info.value.rule == rule
        assert exc_info.value.message == RULE_MESSAGES[rule]

    def test_unparseable_recurrence_dropped_when_not_recurring(self, validator):
        """Test that bad recurrence values on a one-off record are dropped, not rejected."""
        result = validator.validate_create(
            _payload(is_recurring=False, frequency="hourly", next_due_date="bad"),
            user_exists=True,
        )
        assert result.frequency is None
        assert result.next_due_date is None

    def test_valid_recurrence_kept_when_not_recurring(self, validator):
        result = validator.validate_create(
            _payload(is_recurring=False, frequency="annually", next_due_date="2024-02-14"),
            user_exists=True,
        )
        assert result.is_recurring is False
        assert result.frequency == Frequency.ANNUALLY
        assert result.next_due_date == date(2024, 2, 14)

    def test_money_limit(self, validator):
        largest = MONEY_LIMIT - Decimal("0.01")
        result = validator.validate_create(
            _payload(amount=str(-largest), balance=str(largest)), user_exists=True
        )
        assert result.amount == -largest
        assert result.balance == largest

    def test_end_date_only_checked_with_has_end_date(self, validator):
        result = validator.validate_create(
            _payload(is_recurring=True, frequency="monthly", has_end_date=False, end_date="bad"),
            user_exists=True,
        )
        assert result.frequency == Frequency.MONTHLY
        assert result.end_date is None

    def test_recurring_with_end_date(self, validator):
        result = validator.validate_create(
            _payload(
                is_recurring=True,
                frequency="quarterly",
                next_due_date="2023-05-14",
                has_end_date=True,
                end_date="2024-02-14",
            ),
            user_exists=True,
        )
        assert result.has_end_date is True
        assert result.end_date == date(2024, 2, 14)

    def test_error_to_dict(self, validator):
        with pytest.raises(TransactionValidationError) as exc_info:
            validator.validate_create(_payload(amount="abc"), user_exists=True)
        assert exc_info.value.to_dict() == {
            "rule": "InvalidAmount",
            "field": "amount",
            "message": "Invalid amount",
        }


class TestPatchValidation:

    def _stored(self, validator) -> Transaction:
        candidate = validator.validate_create(_payload(), user_exists=True)
        return Transaction(id=7, created_at=datetime(2023, 2, 14, 9, 0), **candidate.model_dump())

    def test_patch_merges_onto_current(self, validator):
        current = self._stored(validator)
        candidate = validator.validate_patch(current, TransactionPatch(description="Tea"))

        assert changed_fields(current, candidate) == {"description": "Tea"}

    def test_patch_revalidates_merged_record(self, validator):
        current = self._stored(validator)
        with pytest.raises(TransactionValidationError) as exc_info:
            validator.validate_patch(current, TransactionPatch(category="  "))
        assert exc_info.value.rule == ValidationRule.CATEGORY_REQUIRED

    def test_equal_value_is_not_a_change(self, validator):
        current = self._stored(validator)
        candidate = validator.validate_patch(current, TransactionPatch(amount="3.5"))
        assert changed_fields(current, candidate) == {}

    def test_stopping_recurrence_keeps_schedule(self, validator):
        current = Transaction(
            id=7,
            created_at=datetime(2023, 2, 14, 9, 0),
            **validator.validate_create(
                _payload(is_recurring=True, frequency="weekly", next_due_date="2023-02-21"),
                user_exists=True,
            ).model_dump(),
        )
        candidate = validator.validate_patch(current, TransactionPatch(is_recurring=False))
        assert changed_fields(current, candidate) == {"is_recurring": False}

    def test_patch_accepts_camel_case(self, validator):
        current = self._stored(validator)
        patch = TransactionPatch.model_validate({"budgetMonth": 4, "budgetYear": 2023})
        candidate = validator.validate_patch(current, patch)
        assert changed_fields(current, candidate) == {"budget_month": 4, "budget_year": 2023}


class TestUserRules:

    def test_normalizes_fields(self):
        fields = UserValidator().validate_create(UserCreate(
            username="  henry ", password="pw", name="  ", email=" henry@example.com "
        ))
        assert fields == {
            "username": "henry",
            "password": "pw",
            "name": None,
            "email": "henry@example.com",
        }

    def test_patch_returns_only_supplied_fields(self):
        changes = UserValidator().validate_patch(UserPatch(name="Henry"))
        assert changes == {"name": "Henry"}

    def test_patch_rejects_empty_password(self):
        with pytest.raises(UserValidationError) as exc_info:
            UserValidator().validate_patch(UserPatch(password=""))
        assert exc_info.value.rule == ValidationRule.PASSWORD_REQUIRED
