from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from core.models.base import MongoModel


class CriterionType(str, Enum):
    LEVEL_REACHED = "level_reached"
    ACTIVITIES_COMPLETED = "activities_completed"
    PERFECT_ATTENDANCE_STREAK = "perfect_attendance_streak"
    POSITIVE_BEHAVIOR_STREAK = "positive_behavior_streak"
    FIRST_SUBMISSION = "first_submission"
    ON_TIME_SUBMISSION_STREAK = "on_time_submission_streak"
    PARTICIPATION_COUNT = "participation_count"
    TOTAL_EXPERIENCE = "total_experience"


class BadgeDefinition(MongoModel):
    badge_id: str = Field(...)
    name: str = Field(...)
    description: str = Field(default="")
    image_url: Optional[str] = None
    criterion: CriterionType = Field(...)
    required_value: int = Field(..., ge=1)
    active: bool = True
    class_id: Optional[str] = Field(default=None, description="Restrict to one class, None for every class")


class BadgeAward(MongoModel):
    """At most one per (student_id, badge_id, class_id), enforced by a unique index."""
    student_id: str = Field(...)
    badge_id: str = Field(...)
    class_id: str = Field(...)
    bonus_experience: int = Field(default=0, ge=0)
    awarded_at: datetime = Field(default_factory=datetime.utcnow)


class BadgeProgress(BaseModel):
    badge: BadgeDefinition
    progress: float
    percentage: float
    completed: bool
