from enum import Enum

from pydantic import Field
from core.models.base import MongoModel
from typing import List, Optional

class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"

class CurrencyTransaction(MongoModel):
    """One immutable row of the currency audit trail."""
    student_id: str = Field(..., description="Student ID")
    class_id: str = Field(..., description="Class ID")
    direction: Direction = Field(...)
    amount: int = Field(..., gt=0)

    # Context
    reason: str = Field(default="")
    source_reference: Optional[str] = Field(default=None, description="e.g. activity:<id>, mission:<id>, item:<id>")

    # Metadata
    performed_by: Optional[str] = Field(None, description="Teacher ID when granted manually")
    idempotency_key: Optional[str] = Field(default=None, description="Grant key, or the row id for unkeyed rows")

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == Direction.CREDIT else -self.amount

class Wallet(MongoModel):
    """Materialized running balance. Always rebuildable from the transactions."""
    student_id: str = Field(...)
    class_id: str = Field(...)
    balance: int = Field(default=0, ge=0)
    credited_keys: List[str] = Field(default_factory=list, description="Keys of the keyed credits already counted")
