"""
Sharing Models

An owner can grant a partner access to their financial data.

Grants are directional: a grant keyed (owner_id, partner_id) lets the
partner see the owner's data, never the other way round.
Invitations are how an owner reaches a partner by email before the
partner is known; redeeming one turns it into a grant.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AccessLevel(str, Enum):
    """Ceiling of what a partner may do with the owner's data."""
    VIEW = "view"
    EDIT = "edit"


class SharingStatus(str, Enum):
    """
    Grant lifecycle.

    pending -> accepted | rejected. Only accepted grants authorize anything.
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
)


class SharedAccessCreate(BaseModel):
    """
    Input for creating a grant.

    New grants start pending. A redeemed invitation is the one place a
    grant is written already accepted.
    """
    model_config = _WIRE_CONFIG

    owner_id: int
    partner_id: int
    access_level: AccessLevel = AccessLevel.VIEW
    status: SharingStatus = SharingStatus.PENDING


class SharedAccess(BaseModel):
    """A stored sharing grant."""
    model_config = _WIRE_CONFIG

    id: int
    owner_id: int
    partner_id: int
    access_level: AccessLevel
    status: SharingStatus
    invite_date: datetime
    accepted_date: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SharingStatus.ACCEPTED

    def involves(self, user_id: int) -> bool:
        return user_id in (self.owner_id, self.partner_id)


class InvitationCreate(BaseModel):
    """Input for creating an invitation."""
    model_config = _WIRE_CONFIG

    user_id: int
    email: str = Field(..., min_length=3)
    token: str = Field(..., min_length=16, repr=False)
    access_level: AccessLevel = AccessLevel.VIEW
    expires_at: datetime


class Invitation(BaseModel):
    """
    A stored invitation.

    CRITICAL: An invitation is redeemable at most once, and never after
    it has expired.
    """
    model_config = _WIRE_CONFIG

    id: int
    user_id: int
    email: str
    token: str = Field(..., repr=False)
    access_level: AccessLevel
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.expires_at <= now

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_redeemable(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now)
