"""Storage abstraction layer."""

from fintrack.services.storage.interface import (
    ConflictError,
    DuplicateImportHashError,
    DuplicateInvitationTokenError,
    DuplicateSharedAccessError,
    EmailTakenError,
    GrantStateError,
    InvitationUnavailableError,
    SharingStorageInterface,
    StorageError,
    StorageInterface,
    StorageUnavailableError,
    TransactionStorageInterface,
    UsernameTakenError,
    UserStorageInterface,
)
from fintrack.services.storage.memory import InMemoryStorage
from fintrack.services.storage.sql import SqlStorage, create_storage_engine
from fintrack.services.storage.factory import initialize_storage, probe_storage

__all__ = [
    # Interfaces
    "StorageInterface",
    "UserStorageInterface",
    "TransactionStorageInterface",
    "SharingStorageInterface",
    # Implementations
    "InMemoryStorage",
    "SqlStorage",
    "create_storage_engine",
    "initialize_storage",
    "probe_storage",
    # Exceptions
    "StorageError",
    "StorageUnavailableError",
    "ConflictError",
    "UsernameTakenError",
    "EmailTakenError",
    "DuplicateImportHashError",
    "DuplicateSharedAccessError",
    "DuplicateInvitationTokenError",
    "InvitationUnavailableError",
    "GrantStateError",
]
