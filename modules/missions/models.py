from datetime import datetime
from typing import Optional

from pydantic import Field

from core.models.base import MongoModel


class Mission(MongoModel):
    mission_id: str = Field(...)
    class_id: str = Field(...)
    title: str = Field(default="")
    description: str = Field(default="")
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    bonus_experience: int = Field(default=0, ge=0)
    bonus_currency: int = Field(default=0, ge=0)
    active: bool = True
    order: int = Field(default=0, description="For sorting order")

    def is_overdue(self, now: datetime = None) -> bool:
        return self.ends_at is not None and (now or datetime.utcnow()) > self.ends_at


class MissionProgress(MongoModel):
    """
    One row per (mission_id, student_id).
    Completion is sticky. A bonus flag is set only after its bonus was written.
    """
    mission_id: str = Field(...)
    student_id: str = Field(...)
    completed_activity_count: int = Field(default=0, ge=0)
    total_activity_count: int = Field(default=0, ge=0)
    percent_complete: float = Field(default=0.0, ge=0, le=100)
    completed: bool = False
    completed_at: Optional[datetime] = None
    experience_bonus_granted: bool = False
    currency_bonus_granted: bool = False
