from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from core.models.base import MongoModel


class Activity(MongoModel):
    activity_id: str = Field(...)
    class_id: str = Field(...)
    mission_id: Optional[str] = Field(default=None, description="Mission this activity counts towards")
    title: str = Field(default="")
    due_at: Optional[datetime] = None

    # Base rewards before score scaling, None falls back to the class config
    experience_points: Optional[int] = Field(default=None, ge=0)
    currency_points: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True


class Submission(MongoModel):
    activity_id: str = Field(...)
    student_id: str = Field(...)
    class_id: str = Field(...)
    submitted_at: Optional[datetime] = None
    score: Optional[float] = None
    graded_at: Optional[datetime] = None
    reward_granted: bool = Field(default=False, description="Set after the grading reward was written, never cleared")


class AttendanceRecord(MongoModel):
    student_id: str = Field(...)
    class_id: str = Field(...)
    date: datetime = Field(...)
    present: bool = True


class BehaviorType(MongoModel):
    behavior_type_id: str = Field(...)
    name: str = Field(...)
    points: int = Field(default=0, description="Positive rewards, negative penalizes")
    participation: bool = Field(default=False, description="Counts towards participation badges")

    @property
    def is_positive(self) -> bool:
        return self.points > 0


class BehaviorRecord(MongoModel):
    """Logged behavior. Points and flags are copied from the type at log time."""
    student_id: str = Field(...)
    class_id: str = Field(...)
    behavior_type_id: str = Field(...)
    points: int = Field(...)
    participation: bool = False
    description: Optional[str] = None
    logged_at: datetime = Field(default_factory=datetime.utcnow)


class SubmissionGrade(BaseModel):
    """A teacher grading a submission, already validated by the web layer."""
    activity_id: str
    student_id: str
    class_id: str
    score: float
    max_experience: Optional[int] = Field(default=None, ge=0)
    max_currency: Optional[int] = Field(default=None, ge=0)
    graded_by: Optional[str] = None


class BehaviorEvent(BaseModel):
    student_id: str
    class_id: str
    behavior_type_id: str
    description: Optional[str] = None
    logged_at: Optional[datetime] = None
    logged_by: Optional[str] = None
