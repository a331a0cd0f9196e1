from datetime import datetime
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from core.database import Database
from core.exceptions import NotFound
from core.logger import setup_logger
from core.unit_of_work import UnitOfWork
from modules.class_settings.model import ProgressionConfig
from modules.classroom.services import ActivityService, SubmissionService
from modules.economy.models import Direction
from modules.economy.services import CurrencyLedger
from modules.missions.models import Mission, MissionProgress
from modules.notifications.services import NotificationService
from modules.xp.services import CharacterService, ExperienceLedger

logger = setup_logger("mission_service")


class MissionService:
    @staticmethod
    async def create_mission(mission: Mission) -> Mission:
        result = await Database.missions().insert_one(mission.to_mongo())
        mission.id = result.inserted_id
        logger.info(f"Created mission: {mission.title} ({mission.mission_id})")
        return mission

    @staticmethod
    async def get_mission(mission_id: str, session=None) -> Mission:
        doc = await Database.missions().find_one({"mission_id": mission_id}, session=session)
        if doc is None:
            raise NotFound("mission", mission_id)
        return Mission(**doc)

    @staticmethod
    async def get_active_missions(class_id: str, session=None) -> List[Mission]:
        cursor = Database.missions().find({"class_id": class_id, "active": True}, session=session).sort("order", 1)
        return [Mission(**doc) async for doc in cursor]

    @staticmethod
    async def count_completed(mission_id: str) -> int:
        """Number of students who completed a mission."""
        return await Database.mission_progress().count_documents({"mission_id": mission_id, "completed": True})


class MissionProgressTracker:
    """Keeps MissionProgress in line with passing submissions and pays completion bonuses once."""

    def __init__(self, ledger: ExperienceLedger):
        self.ledger = ledger

    @staticmethod
    async def get_progress(mission_id: str, student_id: str, session=None) -> Optional[MissionProgress]:
        doc = await Database.mission_progress().find_one(
            {"mission_id": mission_id, "student_id": student_id}, session=session
        )
        return MissionProgress.from_mongo(doc)

    async def refresh(self, mission_id: str, student_id: str, config: ProgressionConfig = None,
                      uow: UnitOfWork = None) -> MissionProgress:
        """
        Recompute how much of the mission the student has passed.

        A mission without activities stays at 0% and can never complete. Once
        completed, a mission stays completed at 100% even if a re-grade lowers
        the live count.
        """
        config = config or ProgressionConfig()
        uow = uow or UnitOfWork()
        session = uow.session

        mission = await MissionService.get_mission(mission_id, session=session)
        activity_ids = await ActivityService.get_mission_activity_ids(mission_id, session=session)
        if not activity_ids:
            existing = await self.get_progress(mission_id, student_id, session=session)
            return existing or MissionProgress(mission_id=mission_id, student_id=student_id)

        passed = await SubmissionService.passed_activity_ids(
            student_id, activity_ids, config.passing_grade, session=session
        )
        total = len(activity_ids)
        done = len(passed)
        percent = round(done / total * 100, 2)

        await self._upsert_counts(mission_id, student_id, done, total, session)

        # Only rows that have not completed follow the live percentage
        await Database.mission_progress().update_one(
            {"mission_id": mission_id, "student_id": student_id, "completed": False},
            {"$set": {"percent_complete": percent}},
            session=session
        )

        just_completed = False
        if percent >= 100:
            claimed = await Database.mission_progress().find_one_and_update(
                {"mission_id": mission_id, "student_id": student_id, "completed": False},
                {"$set": {"completed": True, "completed_at": datetime.utcnow(), "percent_complete": 100.0}},
                session=session
            )
            just_completed = claimed is not None

        progress = await self.get_progress(mission_id, student_id, session=session)
        if progress.completed:
            await self._grant_bonuses(mission, progress, uow)

        if just_completed:
            logger.info(f"Student {student_id} completed mission {mission_id}")
            uow.notify(NotificationService.mission_completed(student_id, mission_id, mission.class_id, mission.title))

        return await self.get_progress(mission_id, student_id, session=session)

    async def refresh_student(self, student_id: str, class_id: str, config: ProgressionConfig = None,
                              uow: UnitOfWork = None) -> List[MissionProgress]:
        uow = uow or UnitOfWork()
        missions = await MissionService.get_active_missions(class_id, session=uow.session)
        return [await self.refresh(m.mission_id, student_id, config, uow) for m in missions]

    @staticmethod
    async def _upsert_counts(mission_id: str, student_id: str, done: int, total: int, session):
        query = {"mission_id": mission_id, "student_id": student_id}
        update = {
            "$set": {
                "completed_activity_count": done,
                "total_activity_count": total,
                "updated_at": datetime.utcnow(),
            },
            "$setOnInsert": {
                "percent_complete": 0.0,
                "completed": False,
                "completed_at": None,
                "experience_bonus_granted": False,
                "currency_bonus_granted": False,
                "created_at": datetime.utcnow(),
            },
        }
        try:
            await Database.mission_progress().update_one(query, update, upsert=True, session=session)
        except DuplicateKeyError:
            await Database.mission_progress().update_one(query, update, session=session)

    @staticmethod
    async def _mark(mission_id: str, student_id: str, flag: str, session):
        """Record that a bonus half has been written. Flags only ever go False -> True."""
        await Database.mission_progress().update_one(
            {"mission_id": mission_id, "student_id": student_id, "completed": True},
            {"$set": {flag: True, "updated_at": datetime.utcnow()}},
            session=session
        )

    async def _grant_bonuses(self, mission: Mission, progress: MissionProgress, uow: UnitOfWork):
        # Pay first under a per-mission key, then flag. A retry after a partial failure pays only what is missing
        grant_key = f"mission:{mission.mission_id}"
        student_id = progress.student_id

        if not progress.experience_bonus_granted:
            if mission.bonus_experience > 0:
                character = await CharacterService.get(student_id, mission.class_id, session=uow.session)
                await self.ledger.apply(
                    character, mission.bonus_experience, f"Mission completed: {mission.title}",
                    source="mission", uow=uow, idempotency_key=grant_key
                )
            await self._mark(mission.mission_id, student_id, "experience_bonus_granted", uow.session)

        if not progress.currency_bonus_granted:
            if mission.bonus_currency > 0:
                await CurrencyLedger.append(
                    student_id, mission.class_id, Direction.CREDIT, mission.bonus_currency,
                    f"Mission completed: {mission.title}",
                    source_reference=grant_key, uow=uow, idempotency_key=grant_key
                )
            await self._mark(mission.mission_id, student_id, "currency_bonus_granted", uow.session)
