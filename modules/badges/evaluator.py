from typing import Awaitable, Callable, Dict

from core.logger import setup_logger
from core.models.character import Character
from modules.badges.models import BadgeDefinition, CriterionType
from modules.class_settings.model import ProgressionConfig
from modules.classroom.services import (
    ActivityService, AttendanceService, BehaviorService, SubmissionService,
)
from modules.xp.services import CharacterService

logger = setup_logger("badge_evaluator")

Handler = Callable[[Character, ProgressionConfig, object], Awaitable[float]]


class BadgeEvaluator:
    """
    Computes a student's current value for a badge criterion.
    Every handler is read-only; the registry decides what to do with the number.
    """

    def __init__(self):
        self._handlers: Dict[CriterionType, Handler] = {
            CriterionType.LEVEL_REACHED: self._level_reached,
            CriterionType.TOTAL_EXPERIENCE: self._total_experience,
            CriterionType.ACTIVITIES_COMPLETED: self._activities_completed,
            CriterionType.FIRST_SUBMISSION: self._first_submission,
            CriterionType.PERFECT_ATTENDANCE_STREAK: self._attendance_streak,
            CriterionType.POSITIVE_BEHAVIOR_STREAK: self._positive_behavior_streak,
            CriterionType.ON_TIME_SUBMISSION_STREAK: self._on_time_streak,
            CriterionType.PARTICIPATION_COUNT: self._participation_count,
        }

    async def progress_for(self, badge: BadgeDefinition, student_id: str, class_id: str,
                           config: ProgressionConfig = None, session=None) -> float:
        config = config or ProgressionConfig()
        try:
            criterion = CriterionType(badge.criterion)
        except ValueError:
            logger.warning(f"Badge {badge.badge_id} has unsupported criterion {badge.criterion!r}")
            return 0

        handler = self._handlers.get(criterion)
        if handler is None:
            logger.warning(f"No evaluator for criterion {criterion.value} (badge {badge.badge_id})")
            return 0

        character = await CharacterService.find(student_id, class_id, session=session)
        if character is None:
            return 0
        return await handler(character, config, session)

    @staticmethod
    def is_complete(badge: BadgeDefinition, progress: float) -> bool:
        return progress >= badge.required_value

    @staticmethod
    def percentage(badge: BadgeDefinition, progress: float) -> float:
        return round(min(100.0, progress / badge.required_value * 100), 2)

    async def _level_reached(self, character, config, session):
        return character.level

    async def _total_experience(self, character, config, session):
        return character.total_experience

    async def _activities_completed(self, character, config, session):
        return await SubmissionService.count_passing(
            character.student_id, character.class_id, config.passing_grade, session=session
        )

    async def _first_submission(self, character, config, session):
        found = await SubmissionService.has_any(character.student_id, character.class_id, session=session)
        return 1 if found else 0

    async def _participation_count(self, character, config, session):
        return await BehaviorService.count_participation(character.student_id, character.class_id, session=session)

    # Streaks: walk newest first, stop at the first entry that does not qualify

    async def _attendance_streak(self, character, config, session):
        records = await AttendanceService.get_recent_attendance(
            character.student_id, character.class_id, session=session
        )
        streak = 0
        for record in records:
            if not record.present:
                break
            streak += 1
        return streak

    async def _positive_behavior_streak(self, character, config, session):
        records = await BehaviorService.get_recent_records(character.student_id, character.class_id, session=session)
        streak = 0
        for record in records:
            if record.points <= 0:
                break
            streak += 1
        return streak

    async def _on_time_streak(self, character, config, session):
        submissions = await SubmissionService.get_recent_submissions(
            character.student_id, character.class_id, session=session
        )
        activities = await ActivityService.get_activities_by_class(character.class_id, session=session)
        due_dates = {a.activity_id: a.due_at for a in activities}

        streak = 0
        for submission in submissions:
            due_at = due_dates.get(submission.activity_id)
            if due_at is None or submission.submitted_at > due_at:
                break
            streak += 1
        return streak
