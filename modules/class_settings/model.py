from typing import Any

from pydantic import BaseModel, Field

from core.models.base import MongoModel


class ProgressionConfig(BaseModel):
    """Tunable rules of the progression engine, overridable per class."""
    # Grading
    passing_grade: float = Field(default=11, ge=0, description="Minimum score counted as passed")
    max_score: float = Field(default=20, gt=0)

    # Activity rewards
    activity_base_experience: int = Field(default=25, ge=0)
    activity_base_currency: int = Field(default=15, ge=0)
    grade_proportional_rewards: bool = Field(default=True, description="Scale activity rewards by the score")

    # Excellence bonuses, ratios of score / max_score
    excellence_ratio: float = Field(default=0.9, ge=0, le=1)
    excellence_multiplier: float = Field(default=1.2, ge=1)
    good_ratio: float = Field(default=0.75, ge=0, le=1)
    good_multiplier: float = Field(default=1.1, ge=1)

    # Badge bonus experience = min(cap, required_value * multiplier)
    badge_bonus_multiplier: int = Field(default=2, ge=0)
    badge_bonus_cap: int = Field(default=100, ge=0)


class ClassSetting(MongoModel):
    class_id: str = Field(..., description="Class id")
    key: str = Field(..., description="ProgressionConfig field name")
    value: Any = Field(...)
