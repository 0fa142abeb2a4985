"""Import-hash deduplication."""

from fintrack.dedup.resolver import DuplicateResolver, derive_import_hash

__all__ = ["DuplicateResolver", "derive_import_hash"]
