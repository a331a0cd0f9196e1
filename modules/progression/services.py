from typing import Dict, Tuple

from loguru import logger

from core.database import Database
from core.exceptions import InvalidScore, NotFound
from core.unit_of_work import UnitOfWork
from modules.badges.evaluator import BadgeEvaluator
from modules.badges.services import BadgeAwardRegistry
from modules.class_settings.service import ClassSettingService
from modules.classroom.models import BehaviorEvent, SubmissionGrade
from modules.classroom.services import ActivityService, BehaviorService, SubmissionService
from modules.economy.models import Direction
from modules.economy.services import CurrencyLedger
from modules.missions.services import MissionProgressTracker, MissionService
from modules.notifications.services import NotificationService
from modules.progression.models import BehaviorResult, GradingResult, MissionCheckResult, PurchaseOutcome
from modules.rewards.services import RewardCalculator
from modules.shop.models import PurchaseRequest
from modules.shop.services import ShopService
from modules.xp.models import ExperienceChange
from modules.xp.services import CharacterService, ExperienceLedger, LevelTable, LevelTableService


class ProgressionFacade:
    """
    Entry point for the web layer. Each on_* method is one unit of work:
    every write happens inside Database.transaction(), and notifications are
    only stored after it commits.
    """

    def __init__(self, level_table: LevelTable):
        self.level_table = level_table
        self.ledger = ExperienceLedger(level_table)
        self.evaluator = BadgeEvaluator()
        self.badges = BadgeAwardRegistry(self.evaluator, self.ledger)
        self.missions = MissionProgressTracker(self.ledger)

    @classmethod
    async def create(cls) -> "ProgressionFacade":
        """Build the facade from the seeded level table. Fails fast when it is missing."""
        return cls(await LevelTableService.load())

    async def on_submission_graded(self, grade: SubmissionGrade) -> GradingResult:
        config = await ClassSettingService.get_config(grade.class_id)
        activity = await ActivityService.get_activity(grade.activity_id)
        if activity.class_id != grade.class_id:
            raise NotFound("activity", (grade.activity_id, grade.class_id))
        if not 0 <= grade.score <= config.max_score:
            raise InvalidScore(f"Score {grade.score} outside 0-{config.max_score:g}")
        character = await CharacterService.get(grade.student_id, grade.class_id)

        async with Database.transaction() as session:
            uow = UnitOfWork(session=session)
            result = GradingResult(grade=grade)

            submission = await SubmissionService.record_grade(
                grade.activity_id, grade.student_id, grade.class_id, grade.score, uow=uow
            )
            if not submission.reward_granted:
                base_experience = _first_set(grade.max_experience, activity.experience_points,
                                             config.activity_base_experience)
                base_currency = _first_set(grade.max_currency, activity.currency_points,
                                           config.activity_base_currency)
                reward = RewardCalculator(config).compute_reward(base_experience, base_currency, grade.score)
                result.reward = reward

                # Both halves are keyed, so a retry after a partial failure pays only what is missing
                grant_key = f"activity:{activity.activity_id}"
                if reward.experience > 0:
                    await self.ledger.apply(
                        character, reward.experience,
                        f"Activity completed: {activity.title} (score {grade.score:g})",
                        source="activity", uow=uow, idempotency_key=grant_key
                    )
                if reward.currency > 0:
                    result.currency_transaction_id = await CurrencyLedger.append(
                        grade.student_id, grade.class_id, Direction.CREDIT, reward.currency,
                        f"Activity completed: {activity.title}",
                        source_reference=grant_key, uow=uow, idempotency_key=grant_key
                    )
                result.rewarded = await SubmissionService.mark_reward_granted(
                    grade.activity_id, grade.student_id, session=session
                )

            reward = result.reward
            uow.notify(NotificationService.activity_graded(
                grade.student_id, activity.activity_id, grade.class_id, activity.title, grade.score,
                reward.experience if reward else 0, reward.currency if reward else 0,
            ))

            # Missions before badges: activity counts feed both
            if activity.mission_id:
                mission = await MissionService.get_mission(activity.mission_id, session=session)
                if mission.active:
                    before = await self.missions.get_progress(mission.mission_id, grade.student_id, session=session)
                    progress = await self.missions.refresh(mission.mission_id, grade.student_id, config, uow)
                    result.missions.append(progress)
                    if progress.completed and not (before and before.completed):
                        result.completed_missions.append(mission.mission_id)

            result.badges = await self.badges.evaluate_and_award(grade.student_id, grade.class_id, config, uow)
            self._finish(uow, result)

        await self._dispatch(uow)
        logger.info(
            f"Graded {grade.activity_id} for {grade.student_id}: score {grade.score:g}, "
            f"rewarded={result.rewarded}, badges={len(result.badges)}, missions={result.completed_missions}"
        )
        return result

    async def on_behavior_logged(self, event: BehaviorEvent) -> BehaviorResult:
        config = await ClassSettingService.get_config(event.class_id)
        behavior_type = await BehaviorService.get_type(event.behavior_type_id)
        character = await CharacterService.get(event.student_id, event.class_id)

        async with Database.transaction() as session:
            uow = UnitOfWork(session=session)
            record = await BehaviorService.log(event, behavior_type, uow=uow)
            result = BehaviorResult(record=record)

            # Negative behaviors are recorded (they break streaks) but never take experience away
            if behavior_type.is_positive:
                await self.ledger.apply(
                    character, behavior_type.points, f"Behavior: {behavior_type.name}",
                    source="behavior", uow=uow
                )

            result.badges = await self.badges.evaluate_and_award(event.student_id, event.class_id, config, uow)
            self._finish(uow, result)

        await self._dispatch(uow)
        logger.info(f"Logged {behavior_type.name} ({behavior_type.points:+d}) for {event.student_id}")
        return result

    async def on_purchase(self, request: PurchaseRequest) -> PurchaseOutcome:
        await CharacterService.get(request.student_id, request.class_id)

        async with Database.transaction() as session:
            uow = UnitOfWork(session=session)
            purchase = await ShopService.purchase(request, uow=uow)
            uow.notify(NotificationService.purchase_made(
                request.student_id, purchase.item.item_id, request.class_id, purchase.item.name, purchase.item.price
            ))
            result = PurchaseOutcome(purchase=purchase)
            self._finish(uow, result)

        await self._dispatch(uow)
        return result

    async def on_mission_check(self, mission_id: str, student_id: str) -> MissionCheckResult:
        mission = await MissionService.get_mission(mission_id)
        config = await ClassSettingService.get_config(mission.class_id)
        await CharacterService.get(student_id, mission.class_id)

        async with Database.transaction() as session:
            uow = UnitOfWork(session=session)
            before = await self.missions.get_progress(mission_id, student_id, session=session)
            progress = await self.missions.refresh(mission_id, student_id, config, uow)
            result = MissionCheckResult(
                progress=progress,
                just_completed=progress.completed and not (before and before.completed),
            )
            result.badges = await self.badges.evaluate_and_award(student_id, mission.class_id, config, uow)
            self._finish(uow, result)

        await self._dispatch(uow)
        return result

    def _finish(self, uow: UnitOfWork, result):
        """Emit one level-up notification per character and copy the buffers onto the result."""
        spans: Dict[Tuple[str, str], Tuple[ExperienceChange, ExperienceChange]] = {}
        for change in uow.experience_changes:
            key = (change.student_id, change.class_id)
            first, _ = spans.get(key, (change, change))
            spans[key] = (first, change)

        for (student_id, class_id), (first, last) in spans.items():
            if last.new_level > first.previous_level:
                uow.notify(NotificationService.level_up(
                    student_id, class_id, first.previous_level, last.new_level, last.new_experience
                ))

        result.experience_changes = list(uow.experience_changes)
        result.notifications = list(uow.notifications)

    @staticmethod
    async def _dispatch(uow: UnitOfWork):
        if uow.notifications:
            await NotificationService.dispatch(uow.notifications)


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return 0
