from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from core.models.notification import Notification
from modules.badges.models import BadgeAward
from modules.classroom.models import BehaviorRecord, SubmissionGrade
from modules.missions.models import MissionProgress
from modules.rewards.models import RewardBreakdown
from modules.shop.models import PurchaseResult
from modules.xp.models import ExperienceChange


class EventResult(BaseModel):
    """What one external event changed, for the caller to render."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    experience_changes: List[ExperienceChange] = Field(default_factory=list)
    badges: List[BadgeAward] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)

    @property
    def leveled_up(self) -> bool:
        return any(change.leveled_up for change in self.experience_changes)

    @property
    def new_level(self) -> Optional[int]:
        if not self.experience_changes:
            return None
        return self.experience_changes[-1].new_level


class GradingResult(EventResult):
    grade: SubmissionGrade
    rewarded: bool = Field(default=False, description="True for the event that finished paying the grading reward")
    reward: Optional[RewardBreakdown] = None
    currency_transaction_id: Optional[ObjectId] = None
    missions: List[MissionProgress] = Field(default_factory=list)
    completed_missions: List[str] = Field(default_factory=list)


class BehaviorResult(EventResult):
    record: BehaviorRecord


class PurchaseOutcome(EventResult):
    purchase: PurchaseResult


class MissionCheckResult(EventResult):
    progress: MissionProgress
    just_completed: bool = False
