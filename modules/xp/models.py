from pydantic import BaseModel, Field, computed_field
from core.models.base import MongoModel
from typing import Literal, Optional

ExperienceSource = Literal['activity', 'behavior', 'badge', 'mission', 'admin_grant']

class ExperienceEvent(MongoModel):
    """Append-only audit row written by every ExperienceLedger.apply."""
    student_id: str = Field(...)
    class_id: str = Field(...)
    requested: int = Field(..., description="Delta asked for by the caller")
    applied: int = Field(..., description="Delta actually applied after clamping at 0")
    source: ExperienceSource = Field(...)
    reason: str = Field(default="")
    level_before: int = Field(..., ge=1)
    level_after: int = Field(..., ge=1)
    idempotency_key: Optional[str] = Field(default=None, description="Grant key, or the row id for unkeyed applies")

class LevelThreshold(MongoModel):
    """Cumulative experience needed to reach a level."""
    level: int = Field(..., ge=1)
    experience_required: int = Field(..., ge=0)
    title: str = Field(default="", description="Title unlocked at this level")

class ExperienceChange(BaseModel):
    student_id: str
    class_id: str
    previous_level: int
    new_level: int
    previous_experience: int
    new_experience: int

    @computed_field
    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level

    @property
    def applied(self) -> int:
        return self.new_experience - self.previous_experience
