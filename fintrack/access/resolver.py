"""
Access Control

Decides whether a requester may act on an owner's data.

RULES:
1. Everyone has full access to their own data
2. Otherwise the grant keyed (owner, requester) decides. Direction
   matters: a grant from A to B says nothing about B's data.
3. Only ACCEPTED grants count. Pending and rejected grants deny.
4. "view" allows reads, "edit" allows reads and writes
5. Deletes are owner-only, whatever the grant says
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from fintrack.models.sharing import AccessLevel
from fintrack.services.storage.interface import SharingStorageInterface


class AccessIntent(str, Enum):
    """What the requester wants to do."""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class AccessDecision(BaseModel):
    """Result of an authorization check."""

    granted: bool
    level: Optional[AccessLevel] = None
    reason: str = ""


class AccessDeniedError(Exception):
    """The requester may not perform this action on the owner's data."""

    def __init__(self, requester_id: int, owner_id: int, intent: AccessIntent):
        self.requester_id = requester_id
        self.owner_id = owner_id
        self.intent = intent
        super().__init__("Access denied")


_ALLOWED_INTENTS: dict[AccessLevel, frozenset[AccessIntent]] = {
    AccessLevel.VIEW: frozenset({AccessIntent.READ}),
    AccessLevel.EDIT: frozenset({AccessIntent.READ, AccessIntent.WRITE}),
}


class AccessResolver:
    """Evaluates grants against the storage backend."""

    def __init__(self, storage: SharingStorageInterface):
        self._storage = storage

    async def authorize(
        self,
        requester_id: int,
        owner_id: int,
        intent: AccessIntent,
    ) -> AccessDecision:
        intent = AccessIntent(intent)

        if requester_id == owner_id:
            return AccessDecision(granted=True, level=AccessLevel.EDIT, reason="owner")

        if intent == AccessIntent.DELETE:
            return AccessDecision(granted=False, reason="delete is owner-only")

        grant = await self._storage.get_shared_access_by_owner_and_partner(owner_id, requester_id)
        if grant is None:
            return AccessDecision(granted=False, reason="no grant")
        if not grant.is_active:
            return AccessDecision(granted=False, reason=f"grant is {grant.status.value}")
        if intent not in _ALLOWED_INTENTS[grant.access_level]:
            return AccessDecision(
                granted=False,
                level=grant.access_level,
                reason=f"{grant.access_level.value} grant does not allow {intent.value}",
            )

        return AccessDecision(granted=True, level=grant.access_level, reason="grant")

    async def require(
        self,
        requester_id: int,
        owner_id: int,
        intent: AccessIntent,
    ) -> AccessDecision:
        """
        Like authorize, but raises on denial.

        Raises:
            AccessDeniedError: If access is not granted
        """
        decision = await self.authorize(requester_id, owner_id, intent)
        if not decision.granted:
            raise AccessDeniedError(requester_id, owner_id, AccessIntent(intent))
        return decision

    async def can_read(self, requester_id: int, owner_id: int) -> bool:
        decision = await self.authorize(requester_id, owner_id, AccessIntent.READ)
        return decision.granted
