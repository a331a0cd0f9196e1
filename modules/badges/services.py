from datetime import datetime
from typing import Dict, List, Optional, Set

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from core.database import Database
from core.exceptions import NotFound
from core.logger import setup_logger
from core.unit_of_work import UnitOfWork
from modules.badges.evaluator import BadgeEvaluator
from modules.badges.models import BadgeAward, BadgeDefinition, BadgeProgress, CriterionType
from modules.class_settings.model import ProgressionConfig
from modules.notifications.services import NotificationService
from modules.xp.services import CharacterService, ExperienceLedger

logger = setup_logger("badge_service")

DEFAULT_BADGES = [
    BadgeDefinition(badge_id="first-delivery", name="First Delivery",
                    description="Hand in your first activity",
                    criterion=CriterionType.FIRST_SUBMISSION, required_value=1),
    BadgeDefinition(badge_id="dedicated-student", name="Dedicated Student",
                    description="Pass 10 activities",
                    criterion=CriterionType.ACTIVITIES_COMPLETED, required_value=10),
    BadgeDefinition(badge_id="rising-star", name="Rising Star",
                    description="Reach level 5",
                    criterion=CriterionType.LEVEL_REACHED, required_value=5),
    BadgeDefinition(badge_id="never-absent", name="Never Absent",
                    description="Attend 30 classes in a row",
                    criterion=CriterionType.PERFECT_ATTENDANCE_STREAK, required_value=30),
    BadgeDefinition(badge_id="good-companion", name="Good Companion",
                    description="5 positive behaviors in a row",
                    criterion=CriterionType.POSITIVE_BEHAVIOR_STREAK, required_value=5),
    BadgeDefinition(badge_id="punctual", name="Punctual",
                    description="Deliver 5 activities on time in a row",
                    criterion=CriterionType.ON_TIME_SUBMISSION_STREAK, required_value=5),
    BadgeDefinition(badge_id="active-voice", name="Active Voice",
                    description="Participate 10 times",
                    criterion=CriterionType.PARTICIPATION_COUNT, required_value=10),
    BadgeDefinition(badge_id="experienced", name="Experienced",
                    description="Accumulate 1000 experience",
                    criterion=CriterionType.TOTAL_EXPERIENCE, required_value=1000),
]


class BadgeService:
    @staticmethod
    async def create_badge(badge: BadgeDefinition) -> BadgeDefinition:
        result = await Database.badges().insert_one(badge.to_mongo())
        badge.id = result.inserted_id
        logger.info(f"Published badge: {badge.name} ({badge.badge_id})")
        return badge

    @staticmethod
    async def get_badge(badge_id: str) -> BadgeDefinition:
        doc = await Database.badges().find_one({"badge_id": badge_id})
        if doc is None:
            raise NotFound("badge", badge_id)
        return BadgeDefinition(**doc)

    @staticmethod
    async def deactivate(badge_id: str) -> bool:
        """Hide a badge from future evaluation. Existing awards stay."""
        result = await Database.badges().update_one(
            {"badge_id": badge_id},
            {"$set": {"active": False, "updated_at": datetime.utcnow()}}
        )
        return result.modified_count > 0

    @staticmethod
    async def get_active_badges(class_id: str, session=None) -> List[BadgeDefinition]:
        """Active badges in scope for a class. Rows that fail validation are skipped."""
        cursor = Database.badges().find(
            {"active": True, "class_id": {"$in": [None, class_id]}}, session=session
        )
        badges = []
        async for doc in cursor:
            try:
                badges.append(BadgeDefinition(**doc))
            except ValidationError as e:
                logger.warning(f"Skipping badge {doc.get('badge_id')}: {e.errors()[0]['msg']}")
        return badges

    @staticmethod
    async def get_awarded_ids(student_id: str, class_id: str, session=None) -> Set[str]:
        cursor = Database.badge_awards().find(
            {"student_id": student_id, "class_id": class_id}, {"badge_id": 1}, session=session
        )
        return {doc["badge_id"] async for doc in cursor}

    @staticmethod
    async def get_awards(student_id: str, class_id: str) -> List[BadgeAward]:
        cursor = Database.badge_awards().find({"student_id": student_id, "class_id": class_id}) \
            .sort("created_at", -1)
        return [BadgeAward(**doc) async for doc in cursor]


class BadgeAwardRegistry:
    """Grants each (student, badge, class) at most once."""

    def __init__(self, evaluator: BadgeEvaluator, ledger: ExperienceLedger):
        self.evaluator = evaluator
        self.ledger = ledger

    @staticmethod
    def bonus_for(badge: BadgeDefinition, config: ProgressionConfig) -> int:
        return min(config.badge_bonus_cap, badge.required_value * config.badge_bonus_multiplier)

    async def evaluate_and_award(self, student_id: str, class_id: str, config: ProgressionConfig = None,
                                 uow: UnitOfWork = None) -> List[BadgeAward]:
        """
        Award every active badge the student now qualifies for.
        Returns only the awards created by this call.
        """
        config = config or ProgressionConfig()
        uow = uow or UnitOfWork()

        granted: List[BadgeAward] = []
        # Bonus XP can unlock more badges (e.g. a level badge), so go again until nothing new
        while True:
            new_awards = await self._award_round(student_id, class_id, config, uow)
            if not new_awards:
                break
            granted.extend(new_awards)
        return granted

    async def _award_round(self, student_id: str, class_id: str, config: ProgressionConfig,
                           uow: UnitOfWork) -> List[BadgeAward]:
        awarded = await BadgeService.get_awarded_ids(student_id, class_id, session=uow.session)
        badges = await BadgeService.get_active_badges(class_id, session=uow.session)

        new_awards = []
        for badge in badges:
            if badge.badge_id in awarded:
                continue

            progress = await self.evaluator.progress_for(badge, student_id, class_id, config, session=uow.session)
            if not self.evaluator.is_complete(badge, progress):
                continue

            award = await self._grant(badge, student_id, class_id, config, uow)
            if award:
                new_awards.append(award)
        return new_awards

    async def _grant(self, badge: BadgeDefinition, student_id: str, class_id: str,
                     config: ProgressionConfig, uow: UnitOfWork) -> Optional[BadgeAward]:
        bonus = self.bonus_for(badge, config)
        award = BadgeAward(student_id=student_id, badge_id=badge.badge_id, class_id=class_id,
                           bonus_experience=bonus)

        # Bonus first under a per-badge key: a crash before the award row is written
        # leaves the badge unawarded, and the next evaluation finishes it without paying twice
        if bonus > 0:
            character = await CharacterService.get(student_id, class_id, session=uow.session)
            await self.ledger.apply(character, bonus, f"Badge earned: {badge.name}", source="badge", uow=uow,
                                    idempotency_key=f"badge:{badge.badge_id}")

        try:
            await Database.badge_awards().insert_one(award.to_mongo(), session=uow.session)
        except DuplicateKeyError:
            # A concurrent evaluation got there first
            logger.info(f"Badge {badge.badge_id} already awarded to {student_id} in {class_id}")
            return None

        logger.info(f"Awarded badge {badge.badge_id} to {student_id} in {class_id}")
        uow.notify(NotificationService.badge_awarded(student_id, badge.badge_id, class_id, badge.name, bonus))
        return award

    async def progress_report(self, student_id: str, class_id: str,
                              config: ProgressionConfig = None) -> List[BadgeProgress]:
        """Progress towards every badge the student has not earned yet."""
        config = config or ProgressionConfig()
        awarded = await BadgeService.get_awarded_ids(student_id, class_id)
        report = []
        for badge in await BadgeService.get_active_badges(class_id):
            if badge.badge_id in awarded:
                continue
            progress = await self.evaluator.progress_for(badge, student_id, class_id, config)
            report.append(BadgeProgress(
                badge=badge,
                progress=progress,
                percentage=self.evaluator.percentage(badge, progress),
                completed=self.evaluator.is_complete(badge, progress),
            ))
        report.sort(key=lambda p: p.badge.required_value)
        return report

    async def evaluate_class(self, class_id: str, config: ProgressionConfig = None,
                             uow: UnitOfWork = None) -> Dict[str, List[BadgeAward]]:
        """Run evaluation for every character in a class (teacher-triggered sweep)."""
        uow = uow or UnitOfWork()
        results = {}
        for character in await CharacterService.list_for_class(class_id, session=uow.session):
            awards = await self.evaluate_and_award(character.student_id, class_id, config, uow)
            if awards:
                results[character.student_id] = awards
        logger.info(f"Badge sweep for class {class_id}: {sum(len(a) for a in results.values())} new awards")
        return results
