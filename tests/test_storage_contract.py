"""
Storage contract tests.

Every test here runs against BOTH backends through the parametrized
``storage`` fixture. A behavior difference between the in-memory and
SQL backends shows up as a failure on one parameter only.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from fintrack.models import (
    AccessLevel,
    Frequency,
    InvitationCreate,
    SharedAccessCreate,
    SharingStatus,
    TransactionPatch,
    TransactionType,
    UserCreate,
    UserPatch,
)
from fintrack.services.storage import (
    DuplicateImportHashError,
    DuplicateInvitationTokenError,
    DuplicateSharedAccessError,
    EmailTakenError,
    InvitationUnavailableError,
    UsernameTakenError,
)
from fintrack.validation import (
    SharingValidationError,
    TransactionValidationError,
    UserValidationError,
    ValidationRule,
)


def _token(n: int) -> str:
    return f"{n:064x}"


class TestUsers:
    """User creation, lookup and update."""

    def test_create_and_lookup(self, storage, run):
        """Test that a created user can be found by id, username and email."""
        user = run(storage.create_user(UserCreate(
            username="alice", password="pw", name="Alice", email="alice@example.com"
        )))

        assert user.id >= 1
        assert user.created_at is not None
        assert run(storage.get_user(user.id)) == user
        assert run(storage.get_user_by_username("alice")) == user
        assert run(storage.get_user_by_email("alice@example.com")) == user

    def test_missing_user_is_none(self, storage, run):
        assert run(storage.get_user(999)) is None
        assert run(storage.get_user_by_username("nobody")) is None
        assert run(storage.get_user_by_email("nobody@example.com")) is None

    def test_duplicate_username_does_not_mutate_state(self, storage, run):
        """Test that a username conflict leaves the stored users untouched."""
        first = run(storage.create_user(UserCreate(username="bob", password="pw")))

        with pytest.raises(UsernameTakenError):
            run(storage.create_user(UserCreate(username="bob", password="other", email="b@x.io")))

        assert run(storage.get_user_by_username("bob")) == first
        assert run(storage.get_user_by_email("b@x.io")) is None
        # The next id continues after the first user, so nothing was half-written
        second = run(storage.create_user(UserCreate(username="carol", password="pw")))
        assert second.id > first.id
        assert run(storage.get_user(first.id + 2)) is None

    def test_duplicate_email_rejected(self, storage, run):
        run(storage.create_user(UserCreate(username="a", password="pw", email="same@x.io")))
        with pytest.raises(EmailTakenError):
            run(storage.create_user(UserCreate(username="b", password="pw", email="same@x.io")))

    @pytest.mark.parametrize("fields,rule", [
        ({"username": "", "password": "pw"}, ValidationRule.USERNAME_REQUIRED),
        ({"username": "   ", "password": "pw"}, ValidationRule.USERNAME_REQUIRED),
        ({"username": "dave", "password": ""}, ValidationRule.PASSWORD_REQUIRED),
        ({"username": "dave", "password": "pw", "email": "not-an-email"},
         ValidationRule.INVALID_EMAIL_FORMAT),
    ])
    def test_invalid_user_rejected(self, storage, run, fields, rule):
        with pytest.raises(UserValidationError) as exc_info:
            run(storage.create_user(UserCreate(**fields)))
        assert exc_info.value.rule == rule

    def test_update_user(self, storage, run, make_user):
        user = make_user()
        updated = run(storage.update_user(user.id, UserPatch(name="New Name")))

        assert updated.name == "New Name"
        assert updated.username == user.username
        assert updated.email == user.email
        assert updated.created_at == user.created_at

    def test_update_user_username_conflict(self, storage, run, make_user):
        first = make_user()
        second = make_user()
        with pytest.raises(UsernameTakenError):
            run(storage.update_user(second.id, UserPatch(username=first.username)))

    def test_update_user_keeping_own_email_is_not_a_conflict(self, storage, run, make_user):
        user = make_user()
        updated = run(storage.update_user(user.id, UserPatch(email=user.email, name="Same")))
        assert updated.email == user.email

    def test_update_missing_user_is_none(self, storage, run):
        assert run(storage.update_user(404, UserPatch(name="x"))) is None


class TestTransactionCreate:
    """Creating transactions, one at a time."""

    def test_create_then_get_round_trips(self, storage, run, make_user, transaction_payload):
        """Test that a stored record equals the input plus id and created_at."""
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(
            user.id,
            subcategory="Supermarket",
            payment_method="card",
            reference="REF-1",
            notes="weekly shop",
            budget_month=2,
            budget_year=2023,
            balance="1234.56",
            import_hash="hash-1",
        )))
        fetched = run(storage.get_transaction_by_id(created.id))

        assert fetched == created
        assert fetched.user_id == user.id
        assert fetched.date == date(2023, 2, 14)
        assert fetched.description == "Groceries"
        assert fetched.amount == Decimal("100.50")
        assert fetched.type == TransactionType.EXPENSE
        assert fetched.category == "Food"
        assert fetched.subcategory == "Supermarket"
        assert fetched.payment_method == "card"
        assert fetched.reference == "REF-1"
        assert fetched.notes == "weekly shop"
        assert fetched.budget_month == 2
        assert fetched.budget_year == 2023
        assert fetched.balance == Decimal("1234.56")
        assert fetched.import_hash == "hash-1"
        assert fetched.is_recurring is False
        assert fetched.created_at is not None

    def test_ids_increase(self, storage, run, make_user, transaction_payload):
        user = make_user()
        first = run(storage.create_transaction(transaction_payload(user.id)))
        second = run(storage.create_transaction(transaction_payload(user.id)))
        assert second.id > first.id

    def test_ids_not_reused_after_delete(self, storage, run, make_user, transaction_payload):
        user = make_user()
        first = run(storage.create_transaction(transaction_payload(user.id)))
        run(storage.delete_transaction(first.id))
        second = run(storage.create_transaction(transaction_payload(user.id)))
        assert second.id > first.id

    def test_amount_rounded_half_up(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id, amount="10.005")))
        assert created.amount == Decimal("10.01")

    def test_numeric_amount_accepted(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id, amount=-42)))
        assert created.amount == Decimal("-42.00")

    @pytest.mark.parametrize("bad_type", ["transfer", "Income", "EXPENSE", "", None, 1])
    def test_other_types_rejected(self, storage, run, make_user, transaction_payload, bad_type):
        user = make_user()
        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.create_transaction(transaction_payload(user.id, type=bad_type)))
        assert exc_info.value.rule == ValidationRule.INVALID_TRANSACTION_TYPE

    @pytest.mark.parametrize("good_type", ["income", "expense"])
    def test_both_types_accepted(self, storage, run, make_user, transaction_payload, good_type):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id, type=good_type)))
        assert created.type.value == good_type

    def test_unknown_user_rejected_first(self, storage, run, transaction_payload):
        """Test that the user rule wins over every other violation."""
        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.create_transaction(transaction_payload(
                999, date="nope", description="", amount="abc", type="x"
            )))
        assert exc_info.value.rule == ValidationRule.USER_NOT_FOUND
        assert exc_info.value.message == "User not found"

    def test_invalid_frequency_rejected_then_valid_accepted(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.create_transaction(transaction_payload(
                user.id, is_recurring=True, frequency="invalid-value"
            )))
        assert exc_info.value.rule == ValidationRule.INVALID_FREQUENCY

        created = run(storage.create_transaction(transaction_payload(
            user.id, is_recurring=True, frequency="monthly", next_due_date="2023-03-14"
        )))
        assert created.frequency == Frequency.MONTHLY
        assert created.next_due_date == date(2023, 3, 14)

    def test_one_off_keeps_valid_recurrence_fields(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(
            user.id, frequency="monthly", next_due_date="2023-03-14"
        )))
        fetched = run(storage.get_transaction_by_id(created.id))

        assert fetched.is_recurring is False
        assert fetched.frequency == Frequency.MONTHLY
        assert fetched.next_due_date == date(2023, 3, 14)

    @pytest.mark.parametrize("amount", ["999999999999.99", "-999999999999.99"])
    def test_largest_storable_amount_round_trips(
        self, storage, run, make_user, transaction_payload, amount
    ):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id, amount=amount)))
        fetched = run(storage.get_transaction_by_id(created.id))
        assert fetched.amount == Decimal(amount)

    @pytest.mark.parametrize(
        "amount", ["12345678901234567.89", "1e12", "-1000000000000", 10 ** 15]
    )
    def test_unstorable_amount_rejected(
        self, storage, run, make_user, transaction_payload, amount
    ):
        user = make_user()
        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.create_transaction(transaction_payload(user.id, amount=amount)))
        assert exc_info.value.rule == ValidationRule.INVALID_AMOUNT
        assert run(storage.get_transactions(user.id)) == []

    def test_unstorable_balance_rejected(self, storage, run, make_user, transaction_payload):
        user = make_user()
        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.create_transaction(transaction_payload(
                user.id, balance="99999999999999.00"
            )))
        assert exc_info.value.rule == ValidationRule.INVALID_BALANCE

    def test_long_text_round_trips(self, storage, run, make_user, transaction_payload):
        user = make_user()
        category = "C" * 300
        reference = "R" * 300
        created = run(storage.create_transaction(transaction_payload(
            user.id, category=category, reference=reference
        )))
        fetched = run(storage.get_transaction_by_id(created.id))
        assert fetched.category == category
        assert fetched.reference == reference

    def test_failed_create_stores_nothing(self, storage, run, make_user, transaction_payload):
        user = make_user()
        with pytest.raises(TransactionValidationError):
            run(storage.create_transaction(transaction_payload(user.id, amount="12abc")))
        assert run(storage.get_transactions(user.id)) == []


class TestImportHash:
    """Deduplication by import hash."""

    def test_second_create_with_same_hash_rejected(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        first = run(storage.create_transaction(transaction_payload(user.id, import_hash="abc")))

        with pytest.raises(DuplicateImportHashError) as exc_info:
            run(storage.create_transaction(transaction_payload(user.id, import_hash="abc")))

        assert exc_info.value.existing == first
        assert len(run(storage.get_transactions(user.id))) == 1

    def test_empty_hash_never_deduplicated(self, storage, run, make_user, transaction_payload):
        user = make_user()
        first = run(storage.create_transaction(transaction_payload(user.id, import_hash="")))
        second = run(storage.create_transaction(transaction_payload(user.id, import_hash="")))

        assert first.import_hash is None
        assert second.import_hash is None
        assert len(run(storage.get_transactions(user.id))) == 2

    def test_lookup_by_hash(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id, import_hash="h1")))
        assert run(storage.get_transaction_by_import_hash("h1")) == created
        assert run(storage.get_transaction_by_import_hash("missing")) is None
        assert run(storage.get_transaction_by_import_hash("")) is None

    def test_hash_is_free_again_after_delete(self, storage, run, make_user, transaction_payload):
        user = make_user()
        first = run(storage.create_transaction(transaction_payload(user.id, import_hash="h1")))
        run(storage.delete_transaction(first.id))
        again = run(storage.create_transaction(transaction_payload(user.id, import_hash="h1")))
        assert again.id != first.id

    def test_update_onto_taken_hash_rejected(self, storage, run, make_user, transaction_payload):
        user = make_user()
        run(storage.create_transaction(transaction_payload(user.id, import_hash="h1")))
        second = run(storage.create_transaction(transaction_payload(user.id, import_hash="h2")))

        with pytest.raises(DuplicateImportHashError):
            run(storage.update_transaction(second.id, TransactionPatch(import_hash="h1")))
        assert run(storage.get_transaction_by_id(second.id)).import_hash == "h2"


class TestBatchCreate:
    """Atomic batch insertion."""

    def test_batch_created_in_order(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_many_transactions([
            transaction_payload(user.id, description="one", import_hash="b1"),
            transaction_payload(user.id, description="two", import_hash="b2"),
            transaction_payload(user.id, description="three"),
        ]))

        assert [t.description for t in created] == ["one", "two", "three"]
        assert created[0].id < created[1].id < created[2].id

    def test_invalid_row_aborts_whole_batch(self, storage, run, make_user, transaction_payload):
        user = make_user()
        with pytest.raises(TransactionValidationError):
            run(storage.create_many_transactions([
                transaction_payload(user.id, description="ok"),
                transaction_payload(user.id, amount="not a number"),
            ]))
        assert run(storage.get_transactions(user.id)) == []

    def test_in_batch_duplicate_aborts_whole_batch(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        with pytest.raises(DuplicateImportHashError) as exc_info:
            run(storage.create_many_transactions([
                transaction_payload(user.id, import_hash="dup"),
                transaction_payload(user.id, import_hash="dup"),
            ]))
        assert exc_info.value.existing is None
        assert run(storage.get_transactions(user.id)) == []

    def test_stored_duplicate_aborts_whole_batch(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        run(storage.create_transaction(transaction_payload(user.id, import_hash="dup")))
        with pytest.raises(DuplicateImportHashError):
            run(storage.create_many_transactions([
                transaction_payload(user.id, import_hash="fresh"),
                transaction_payload(user.id, import_hash="dup"),
            ]))
        assert len(run(storage.get_transactions(user.id))) == 1
        assert run(storage.get_transaction_by_import_hash("fresh")) is None

    def test_empty_batch(self, storage, run):
        assert run(storage.create_many_transactions([])) == []


class TestTransactionUpdate:
    """Partial updates."""

    def test_description_only_changes_description(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(
            user.id,
            is_recurring=True,
            frequency="weekly",
            next_due_date="2023-02-21",
            budget_month=2,
            budget_year=2023,
            notes="n",
            import_hash="h",
        )))

        updated = run(storage.update_transaction(created.id, TransactionPatch(description="X")))

        assert updated.description == "X"
        before = created.model_dump(exclude={"description"})
        after = updated.model_dump(exclude={"description"})
        assert after == before
        assert run(storage.get_transaction_by_id(created.id)) == updated

    def test_empty_patch_returns_current(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id)))
        assert run(storage.update_transaction(created.id, TransactionPatch())) == created

    def test_turning_off_recurrence_keeps_schedule(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(
            user.id, is_recurring=True, frequency="monthly", next_due_date="2023-03-14"
        )))

        updated = run(storage.update_transaction(
            created.id, TransactionPatch(is_recurring=False)
        ))

        assert updated.is_recurring is False
        assert updated.frequency == Frequency.MONTHLY
        assert updated.next_due_date == date(2023, 3, 14)
        assert run(storage.get_transaction_by_id(created.id)) == updated

    def test_invalid_patch_rejected_and_nothing_changes(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id)))

        with pytest.raises(TransactionValidationError) as exc_info:
            run(storage.update_transaction(created.id, TransactionPatch(date="2023-02-30")))

        assert exc_info.value.rule == ValidationRule.INVALID_DATE_FORMAT
        assert run(storage.get_transaction_by_id(created.id)) == created

    def test_update_amount_and_type(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id)))
        updated = run(storage.update_transaction(
            created.id, TransactionPatch(amount="2500", type="income")
        ))
        assert updated.amount == Decimal("2500.00")
        assert updated.type == TransactionType.INCOME

    def test_update_missing_is_none(self, storage, run):
        assert run(storage.update_transaction(404, TransactionPatch(description="x"))) is None


class TestTransactionDelete:

    def test_delete_then_get_is_none(self, storage, run, make_user, transaction_payload):
        user = make_user()
        created = run(storage.create_transaction(transaction_payload(user.id)))

        assert run(storage.delete_transaction(created.id)) is True
        assert run(storage.get_transaction_by_id(created.id)) is None

    def test_delete_missing_returns_false(self, storage, run):
        assert run(storage.delete_transaction(12345)) is False


class TestTransactionQueries:
    """Listing and filtering."""

    def test_budget_month_returns_exact_subset(self, storage, run, make_user, transaction_payload):
        user = make_user()
        other = make_user()
        for month in (1, 2, 3):
            run(storage.create_transaction(transaction_payload(
                user.id, description=f"month {month}", budget_month=month, budget_year=2023
            )))
        run(storage.create_transaction(transaction_payload(
            user.id, description="other year", budget_month=2, budget_year=2022
        )))
        run(storage.create_transaction(transaction_payload(
            other.id, description="other user", budget_month=2, budget_year=2023
        )))

        result = run(storage.get_transactions_by_budget_month(user.id, 2, 2023))

        assert [t.description for t in result] == ["month 2"]

    def test_budget_month_is_independent_of_date(
        self, storage, run, make_user, transaction_payload
    ):
        user = make_user()
        run(storage.create_transaction(transaction_payload(
            user.id, date="2023-01-31", budget_month=2, budget_year=2023
        )))
        assert len(run(storage.get_transactions_by_budget_month(user.id, 2, 2023))) == 1
        assert run(storage.get_transactions_by_budget_month(user.id, 1, 2023)) == []

    def test_date_range_is_inclusive(self, storage, run, make_user, transaction_payload):
        user = make_user()
        for day in ("2023-01-31", "2023-02-01", "2023-02-28", "2023-03-01"):
            run(storage.create_transaction(transaction_payload(user.id, date=day)))

        result = run(storage.get_transactions_by_date_range(
            user.id, date(2023, 2, 1), date(2023, 2, 28)
        ))

        assert [t.date for t in result] == [date(2023, 2, 28), date(2023, 2, 1)]

    def test_category_is_exact(self, storage, run, make_user, transaction_payload):
        user = make_user()
        run(storage.create_transaction(transaction_payload(user.id, category="Food")))
        run(storage.create_transaction(transaction_payload(user.id, category="Food & Drink")))
        run(storage.create_transaction(transaction_payload(user.id, category="food")))

        result = run(storage.get_transactions_by_category(user.id, "Food"))

        assert [t.category for t in result] == ["Food"]

    def test_listing_newest_first_then_id(self, storage, run, make_user, transaction_payload):
        user = make_user()
        older = run(storage.create_transaction(transaction_payload(user.id, date="2023-01-01")))
        same_day_a = run(storage.create_transaction(transaction_payload(user.id, date="2023-06-01")))
        same_day_b = run(storage.create_transaction(transaction_payload(user.id, date="2023-06-01")))

        result = run(storage.get_transactions(user.id))

        assert [t.id for t in result] == [same_day_b.id, same_day_a.id, older.id]

    def test_listing_only_returns_own_records(self, storage, run, make_user, transaction_payload):
        user = make_user()
        other = make_user()
        run(storage.create_transaction(transaction_payload(other.id)))
        assert run(storage.get_transactions(user.id)) == []


class TestSharedAccess:
    """Grant storage."""

    def test_new_grant_is_pending(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id, access_level=AccessLevel.EDIT
        )))

        assert grant.status == SharingStatus.PENDING
        assert grant.access_level == AccessLevel.EDIT
        assert grant.accepted_date is None
        assert run(storage.get_shared_access_by_id(grant.id)) == grant

    def test_grant_created_accepted(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id,
            partner_id=partner.id,
            access_level=AccessLevel.VIEW,
            status=SharingStatus.ACCEPTED,
        )))

        assert grant.status == SharingStatus.ACCEPTED
        assert grant.accepted_date is not None
        fetched = run(storage.get_shared_access_by_id(grant.id))
        assert fetched.status == SharingStatus.ACCEPTED
        assert fetched.accepted_date is not None

    def test_lookup_by_pair_is_directional(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id
        )))

        assert run(storage.get_shared_access_by_owner_and_partner(owner.id, partner.id)) == grant
        assert run(storage.get_shared_access_by_owner_and_partner(partner.id, owner.id)) is None

    def test_reverse_grant_is_a_separate_grant(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        run(storage.create_shared_access(SharedAccessCreate(owner_id=owner.id, partner_id=partner.id)))
        reverse = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=partner.id, partner_id=owner.id
        )))
        assert reverse.status == SharingStatus.PENDING

    def test_duplicate_pair_rejected(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        run(storage.create_shared_access(SharedAccessCreate(owner_id=owner.id, partner_id=partner.id)))
        with pytest.raises(DuplicateSharedAccessError):
            run(storage.create_shared_access(SharedAccessCreate(
                owner_id=owner.id, partner_id=partner.id
            )))

    def test_invalid_grants_rejected_in_order(self, storage, run, make_user):
        owner = make_user()

        with pytest.raises(SharingValidationError) as exc_info:
            run(storage.create_shared_access(SharedAccessCreate(owner_id=999, partner_id=999)))
        assert exc_info.value.rule == ValidationRule.SELF_SHARE

        with pytest.raises(SharingValidationError) as exc_info:
            run(storage.create_shared_access(SharedAccessCreate(owner_id=999, partner_id=owner.id)))
        assert exc_info.value.rule == ValidationRule.OWNER_NOT_FOUND

        with pytest.raises(SharingValidationError) as exc_info:
            run(storage.create_shared_access(SharedAccessCreate(owner_id=owner.id, partner_id=999)))
        assert exc_info.value.rule == ValidationRule.PARTNER_NOT_FOUND

    def test_accept_stamps_accepted_date(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id
        )))

        accepted = run(storage.update_shared_access_status(grant.id, SharingStatus.ACCEPTED))

        assert accepted.status == SharingStatus.ACCEPTED
        assert accepted.accepted_date is not None

    def test_reject_leaves_accepted_date_empty(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id
        )))
        rejected = run(storage.update_shared_access_status(grant.id, SharingStatus.REJECTED))
        assert rejected.accepted_date is None

    def test_change_level(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id
        )))
        updated = run(storage.update_shared_access_level(grant.id, AccessLevel.EDIT))
        assert updated.access_level == AccessLevel.EDIT
        assert run(storage.get_shared_access_by_id(grant.id)).access_level == AccessLevel.EDIT

    def test_updates_of_missing_grant_are_none(self, storage, run):
        assert run(storage.update_shared_access_status(77, SharingStatus.ACCEPTED)) is None
        assert run(storage.update_shared_access_level(77, AccessLevel.EDIT)) is None
        assert run(storage.delete_shared_access(77)) is False

    def test_list_includes_both_directions(self, storage, run, make_user):
        alice = make_user()
        bob = make_user()
        carol = make_user()
        given = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=alice.id, partner_id=bob.id
        )))
        received = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=carol.id, partner_id=alice.id
        )))
        run(storage.create_shared_access(SharedAccessCreate(owner_id=bob.id, partner_id=carol.id)))

        assert [g.id for g in run(storage.get_shared_accesses(alice.id))] == [given.id, received.id]

    def test_delete_frees_the_pair(self, storage, run, make_user):
        owner = make_user()
        partner = make_user()
        grant = run(storage.create_shared_access(SharedAccessCreate(
            owner_id=owner.id, partner_id=partner.id
        )))
        assert run(storage.delete_shared_access(grant.id)) is True
        assert run(storage.get_shared_access_by_owner_and_partner(owner.id, partner.id)) is None
        run(storage.create_shared_access(SharedAccessCreate(owner_id=owner.id, partner_id=partner.id)))


class TestInvitations:
    """Invitation storage and single-use redemption."""

    def _invitation(self, user_id, n=1, expires_in=timedelta(days=7), email="friend@example.com"):
        return InvitationCreate(
            user_id=user_id,
            email=email,
            token=_token(n),
            access_level=AccessLevel.VIEW,
            expires_at=datetime.utcnow() + expires_in,
        )

    def test_create_and_lookup(self, storage, run, make_user):
        owner = make_user()
        invitation = run(storage.create_invitation(self._invitation(owner.id)))

        assert invitation.used_at is None
        assert run(storage.get_invitation_by_token(_token(1))) == invitation
        assert run(storage.get_invitation_by_token(_token(2))) is None

    def test_use_exactly_once(self, storage, run, make_user):
        owner = make_user()
        invitation = run(storage.create_invitation(self._invitation(owner.id)))

        used = run(storage.use_invitation(invitation.id))
        assert used.used_at is not None

        with pytest.raises(InvitationUnavailableError) as exc_info:
            run(storage.use_invitation(invitation.id))
        assert exc_info.value.reason == InvitationUnavailableError.USED

    def test_expired_invitation_cannot_be_used(self, storage, run, make_user):
        owner = make_user()
        invitation = run(storage.create_invitation(
            self._invitation(owner.id, expires_in=timedelta(seconds=-1))
        ))
        with pytest.raises(InvitationUnavailableError) as exc_info:
            run(storage.use_invitation(invitation.id))
        assert exc_info.value.reason == InvitationUnavailableError.EXPIRED

    def test_use_missing_is_none(self, storage, run):
        assert run(storage.use_invitation(31337)) is None

    def test_duplicate_token_rejected(self, storage, run, make_user):
        owner = make_user()
        run(storage.create_invitation(self._invitation(owner.id)))
        with pytest.raises(DuplicateInvitationTokenError):
            run(storage.create_invitation(self._invitation(owner.id, email="other@example.com")))

    def test_unknown_inviter_rejected(self, storage, run):
        with pytest.raises(SharingValidationError) as exc_info:
            run(storage.create_invitation(self._invitation(999)))
        assert exc_info.value.rule == ValidationRule.OWNER_NOT_FOUND

    def test_malformed_email_rejected(self, storage, run, make_user):
        owner = make_user()
        with pytest.raises(SharingValidationError) as exc_info:
            run(storage.create_invitation(self._invitation(owner.id, email="nope@nowhere")))
        assert exc_info.value.rule == ValidationRule.INVALID_EMAIL_FORMAT

    def test_list_and_delete(self, storage, run, make_user):
        owner = make_user()
        other = make_user()
        first = run(storage.create_invitation(self._invitation(owner.id, n=1)))
        second = run(storage.create_invitation(self._invitation(owner.id, n=2)))
        run(storage.create_invitation(self._invitation(other.id, n=3)))

        assert [i.id for i in run(storage.get_invitations(owner.id))] == [first.id, second.id]
        assert run(storage.delete_invitation(first.id)) is True
        assert run(storage.delete_invitation(first.id)) is False
        assert run(storage.get_invitation_by_token(_token(1))) is None


class TestPing:

    def test_ping(self, storage, run):
        assert run(storage.ping()) is True
