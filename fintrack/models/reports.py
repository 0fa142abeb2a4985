"""
Batch Operation Reports

Bulk operations never abort because of one bad record. Instead they
return what succeeded alongside what was skipped, and why.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fintrack.models.transaction import Transaction


_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
)


class SkipReason(str, Enum):
    """Why an import row was not created."""
    VALIDATION_ERROR = "Validation error"
    DUPLICATE_IMPORT_HASH = "Duplicate import hash"


class SkippedRecord(BaseModel):
    """
    One import row that was skipped.

    DESIGN DECISION: We never echo the conflicting stored record here.
    ``existing_transaction_id`` is only filled in when the stored record
    belongs to the same owner the import is for; otherwise a duplicate
    report would leak the existence of somebody else's data.
    """
    model_config = _WIRE_CONFIG

    index: int = Field(..., ge=0, description="Position of the row in the submitted batch")
    reason: SkipReason
    rule: Optional[str] = Field(
        default=None,
        description="Violated validation rule identifier, if any"
    )
    message: str
    record: dict[str, Any] = Field(
        default_factory=dict,
        description="The submitted row, as received"
    )
    existing_transaction_id: Optional[int] = None


class ImportStats(BaseModel):
    model_config = _WIRE_CONFIG

    total: int = Field(ge=0)
    created: int = Field(ge=0)
    skipped: int = Field(ge=0)


class ImportResult(BaseModel):
    """Outcome of importing a batch of transactions."""
    model_config = _WIRE_CONFIG

    created: list[Transaction] = Field(default_factory=list)
    skipped: list[SkippedRecord] = Field(default_factory=list)
    stats: ImportStats

    @property
    def has_created(self) -> bool:
        return bool(self.created)


class BulkUpdateFailure(BaseModel):
    """One entry of a bulk update that could not be applied."""
    model_config = _WIRE_CONFIG

    id: Optional[int] = None
    code: str = Field(..., description="MISSING_ID, NOT_FOUND, FORBIDDEN or the violated rule")
    message: str


class BulkUpdateResult(BaseModel):
    model_config = _WIRE_CONFIG

    updated: list[Transaction] = Field(default_factory=list)
    failed: list[BulkUpdateFailure] = Field(default_factory=list)
