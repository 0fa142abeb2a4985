"""
Shared fixtures.

Storage calls are coroutines; tests drive them with ``run`` rather than
an async plugin. The ``storage`` fixture runs every test that uses it
against both backends, which is what keeps them in lockstep.
"""

import asyncio
from itertools import count

import pytest

from fintrack.models import TransactionCreate, UserCreate
from fintrack.services.storage import InMemoryStorage, SqlStorage


@pytest.fixture
def run():
    """Run a coroutine to completion."""
    def _run(coro):
        return asyncio.run(coro)
    return _run


@pytest.fixture(params=["memory", "sql"])
def storage(request, tmp_path):
    """Each storage backend in turn. SQL runs on a fresh SQLite file."""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SqlStorage.from_url(f"sqlite:///{tmp_path / 'fintrack.db'}")
    yield backend
    asyncio.run(backend.close())


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
def sql_storage(tmp_path):
    backend = SqlStorage.from_url(f"sqlite:///{tmp_path / 'fintrack.db'}")
    yield backend
    asyncio.run(backend.close())


@pytest.fixture
def make_user(storage, run):
    """Create a user with a unique username and email."""
    numbers = count(1)

    def _make_user(username=None, email=None):
        n = next(numbers)
        return run(storage.create_user(UserCreate(
            username=username or f"user{n}",
            password="secret",
            name=f"User {n}",
            email=email or f"user{n}@example.com",
        )))
    return _make_user


@pytest.fixture
def transaction_payload():
    """Build a valid transaction payload; keyword overrides win."""
    def _payload(user_id, **overrides):
        fields = {
            "user_id": user_id,
            "date": "2023-02-14",
            "description": "Groceries",
            "amount": "100.50",
            "type": "expense",
            "category": "Food",
        }
        fields.update(overrides)
        return TransactionCreate(**fields)
    return _payload
