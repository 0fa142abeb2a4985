"""
Tests specific to the relational backend and to backend selection.

Parity with the in-memory backend is covered by test_storage_contract.py;
this module covers what only a real database can show: constraint
mapping, rollback, persistence and unreachable databases.
"""

import pytest
from sqlalchemy import inspect

from fintrack.config import DatabaseSettings, Settings
from fintrack.models import NewTransaction, TransactionCreate, UserCreate
from fintrack.services.storage import (
    DuplicateImportHashError,
    InMemoryStorage,
    SqlStorage,
    StorageUnavailableError,
    UsernameTakenError,
    create_storage_engine,
    initialize_storage,
)
from fintrack.services.storage.schema import TRANSACTION_COLUMNS, USER_COLUMNS


def _payload(user_id, **overrides):
    fields = {
        "user_id": user_id,
        "date": "2023-05-01",
        "description": "Salary",
        "amount": "3000",
        "type": "income",
        "category": "Work",
    }
    fields.update(overrides)
    return TransactionCreate(**fields)


class TestSchema:
    """Tables and field -> column maps."""

    def test_tables_created(self, sql_storage):
        tables = set(inspect(sql_storage._engine).get_table_names())
        assert {"users", "transactions", "shared_access", "invitations"} <= tables

    def test_every_transaction_field_has_a_column(self):
        assert set(TRANSACTION_COLUMNS) == set(NewTransaction.model_fields) | {"created_at"}

    def test_every_user_field_has_a_column(self):
        assert set(USER_COLUMNS) == {"username", "password", "name", "email", "created_at"}


class TestDurability:

    def test_data_survives_reopen(self, tmp_path, run):
        """Test that a second storage on the same file sees the first one's writes."""
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        first = SqlStorage.from_url(url)
        user = run(first.create_user(UserCreate(username="erin", password="pw")))
        created = run(first.create_transaction(_payload(user.id)))
        run(first.close())

        second = SqlStorage.from_url(url)
        try:
            assert run(second.get_transaction_by_id(created.id)) == created
            assert run(second.get_user_by_username("erin")) == user
        finally:
            run(second.close())


class TestConstraintMapping:
    """Database constraint violations surface as the matching conflict error."""

    def test_unique_import_hash_enforced_by_database(self, sql_storage, run, monkeypatch):
        """Test that a race past the in-code hash check still rolls back the whole batch."""
        user = run(sql_storage.create_user(UserCreate(username="frank", password="pw")))
        run(sql_storage.create_transaction(_payload(user.id, import_hash="taken")))

        # Simulate a concurrent writer that slipped in after our check
        monkeypatch.setattr(sql_storage, "_check_import_hash", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateImportHashError):
            run(sql_storage.create_many_transactions([
                _payload(user.id, import_hash="fresh"),
                _payload(user.id, import_hash="taken"),
            ]))

        assert len(run(sql_storage.get_transactions(user.id))) == 1
        assert run(sql_storage.get_transaction_by_import_hash("fresh")) is None

    def test_unique_username_enforced_by_database(self, sql_storage, run, monkeypatch):
        run(sql_storage.create_user(UserCreate(username="grace", password="pw")))
        monkeypatch.setattr(sql_storage, "_check_user_unique", lambda *args, **kwargs: None)

        with pytest.raises(UsernameTakenError):
            run(sql_storage.create_user(UserCreate(username="grace", password="pw")))


class TestUnavailable:

    def _unreachable(self):
        settings = DatabaseSettings(url="sqlite:////nonexistent-dir/fintrack/ledger.db")
        return SqlStorage(create_storage_engine(settings), create_schema=False)

    def test_ping_raises_unavailable(self, run):
        storage = self._unreachable()
        with pytest.raises(StorageUnavailableError):
            run(storage.ping())

    def test_reads_raise_unavailable(self, run):
        storage = self._unreachable()
        with pytest.raises(StorageUnavailableError):
            run(storage.get_user(1))


class TestInitializeStorage:
    """Backend selection happens once, before serving."""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("DATABASE_URL", "STORAGE_BACKEND", "FALLBACK_TO_MEMORY"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DATABASE_CONNECT_RETRIES", "1")

    def test_memory_when_requested(self, run, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        storage = run(initialize_storage(Settings()))
        assert isinstance(storage, InMemoryStorage)

    def test_memory_when_no_database_configured(self, run):
        storage = run(initialize_storage(Settings()))
        assert storage.backend_name == "memory"

    def test_sql_when_database_reachable(self, run, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
        storage = run(initialize_storage(Settings()))
        try:
            assert isinstance(storage, SqlStorage)
            assert run(storage.ping()) is True
        finally:
            run(storage.close())

    def test_falls_back_to_memory_when_unreachable(self, run, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:////nonexistent-dir/fintrack/ledger.db")
        storage = run(initialize_storage(Settings()))
        assert isinstance(storage, InMemoryStorage)

    def test_no_fallback_when_disabled(self, run, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:////nonexistent-dir/fintrack/ledger.db")
        monkeypatch.setenv("FALLBACK_TO_MEMORY", "false")
        with pytest.raises(StorageUnavailableError):
            run(initialize_storage(Settings()))

    def test_no_fallback_when_sql_is_required(self, run, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:////nonexistent-dir/fintrack/ledger.db")
        monkeypatch.setenv("STORAGE_BACKEND", "sql")
        with pytest.raises(StorageUnavailableError):
            run(initialize_storage(Settings()))
