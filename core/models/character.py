from typing import List

from pydantic import Field

from core.models.base import MongoModel


class Character(MongoModel):
    """A student's gamified identity inside one class."""
    student_id: str = Field(..., description="Student ID")
    class_id: str = Field(..., description="Class ID")
    name: str = Field(default="")
    archetype: str = Field(default="warrior", description="RPG class picked on joining")

    # Progression, only ever written by ExperienceLedger
    level: int = Field(default=1, ge=1)
    total_experience: int = Field(default=0, ge=0)
    ledger_keys: List[str] = Field(default_factory=list, description="Keys of the keyed grants already applied")

    archived: bool = Field(default=False)
