"""
User Models

A user owns transactions and may share them with partners.
Credential material (``password``) is opaque here: hashing happens
outside this package and we store whatever we are given.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UserCreate(BaseModel):
    """
    Input for creating a user.

    Fields are deliberately loose; the user validator decides
    what is acceptable so both backends fail identically.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    username: str = ""
    password: str = Field(default="", repr=False)
    name: Optional[str] = None
    email: Optional[str] = None


class UserPatch(BaseModel):
    """
    Partial update for a user.

    Only the fields explicitly supplied are changed.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    name: Optional[str] = None
    email: Optional[str] = None

    def changes(self) -> dict:
        """Supplied fields only."""
        return self.model_dump(exclude_unset=True)


class User(BaseModel):
    """A stored user."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: int
    username: str
    password: str = Field(..., repr=False)
    name: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime
