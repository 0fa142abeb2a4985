"""Access control for shared financial data."""

from fintrack.access.resolver import (
    AccessDecision,
    AccessDeniedError,
    AccessIntent,
    AccessResolver,
)

__all__ = [
    "AccessDecision",
    "AccessDeniedError",
    "AccessIntent",
    "AccessResolver",
]
