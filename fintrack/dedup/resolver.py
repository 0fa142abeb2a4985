"""
Import Deduplication

An import hash is a fingerprint of a bank statement row. Re-importing
the same statement must not create the same transaction twice.

DESIGN DECISION: Matching is exact string equality on the hash. No fuzzy
matching, no normalization beyond trimming. A record without a hash is
never treated as a duplicate of anything.
"""

import hashlib
from datetime import date
from decimal import Decimal
from typing import Optional, Union

from fintrack.models.transaction import Transaction
from fintrack.services.storage.interface import TransactionStorageInterface


class DuplicateResolver:
    """Looks up the stored transaction an import hash already belongs to."""

    def __init__(self, storage: TransactionStorageInterface):
        self._storage = storage

    async def resolve_duplicate(self, import_hash: Optional[str]) -> Optional[Transaction]:
        """
        Find the transaction holding this hash.

        Returns None when the hash is empty or unknown.
        """
        if import_hash is None:
            return None
        import_hash = import_hash.strip()
        if not import_hash:
            return None
        return await self._storage.get_transaction_by_import_hash(import_hash)


def derive_import_hash(
    date_value: Union[date, str],
    amount: Union[Decimal, int, float, str],
    description: str,
    reference: Optional[str] = None,
) -> str:
    """
    SHA-256 fingerprint of a statement row.

    Callers that do not get a hash from their bank can derive one.
    Amounts are fixed to two places so 12.5 and "12.50" agree.
    """
    if isinstance(date_value, date):
        date_value = date_value.isoformat()
    amount_text = f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"
    parts = [
        date_value.strip(),
        amount_text,
        " ".join(description.split()).lower(),
        (reference or "").strip(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
