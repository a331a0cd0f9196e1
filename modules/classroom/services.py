from datetime import datetime
from typing import List, Optional, Set

from pymongo import ReturnDocument

from core.database import Database
from core.exceptions import NotFound
from core.logger import setup_logger
from core.unit_of_work import UnitOfWork
from modules.classroom.models import (
    Activity, AttendanceRecord, BehaviorEvent, BehaviorRecord, BehaviorType, Submission,
)

logger = setup_logger("classroom_service")

DEFAULT_BEHAVIOR_TYPES = [
    BehaviorType(behavior_type_id="active-participation", name="Active Participation", points=10, participation=True),
    BehaviorType(behavior_type_id="correct-answer", name="Correct Answer", points=15, participation=True),
    BehaviorType(behavior_type_id="helps-classmates", name="Helps Classmates", points=20),
    BehaviorType(behavior_type_id="on-time-delivery", name="On-time Delivery", points=5),
    BehaviorType(behavior_type_id="late-arrival", name="Late Arrival", points=-5),
    BehaviorType(behavior_type_id="distraction", name="Distraction", points=-10),
    BehaviorType(behavior_type_id="missing-delivery", name="Missing Delivery", points=-15),
]


class ActivityService:
    @staticmethod
    async def create_activity(activity: Activity) -> Activity:
        result = await Database.activities().insert_one(activity.to_mongo())
        activity.id = result.inserted_id
        logger.info(f"Created activity: {activity.title} ({activity.activity_id})")
        return activity

    @staticmethod
    async def get_activity(activity_id: str, session=None) -> Activity:
        doc = await Database.activities().find_one({"activity_id": activity_id}, session=session)
        if doc is None:
            raise NotFound("activity", activity_id)
        return Activity(**doc)

    @staticmethod
    async def get_activities_by_class(class_id: str, session=None) -> List[Activity]:
        cursor = Database.activities().find({"class_id": class_id}, session=session)
        return [Activity(**doc) async for doc in cursor]

    @staticmethod
    async def get_mission_activity_ids(mission_id: str, session=None) -> List[str]:
        """Activities attach to a mission through Activity.mission_id."""
        cursor = Database.activities().find({"mission_id": mission_id}, {"activity_id": 1}, session=session)
        return [doc["activity_id"] async for doc in cursor]


class SubmissionService:
    @staticmethod
    async def submit(activity_id: str, student_id: str, class_id: str,
                     submitted_at: datetime = None) -> Submission:
        """Record (or re-record) a student's delivery of an activity."""
        submitted_at = submitted_at or datetime.utcnow()
        doc = await Database.submissions().find_one_and_update(
            {"activity_id": activity_id, "student_id": student_id},
            {
                "$set": {"submitted_at": submitted_at, "class_id": class_id, "updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow(), "reward_granted": False},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return Submission(**doc)

    @staticmethod
    async def record_grade(activity_id: str, student_id: str, class_id: str, score: float,
                           uow: UnitOfWork = None) -> Submission:
        """Store (or overwrite) the score of a submission and return it."""
        uow = uow or UnitOfWork()
        doc = await Database.submissions().find_one_and_update(
            {"activity_id": activity_id, "student_id": student_id},
            {
                "$set": {"score": score, "graded_at": datetime.utcnow(), "class_id": class_id,
                         "updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow(), "reward_granted": False},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=uow.session
        )
        return Submission(**doc)

    @staticmethod
    async def mark_reward_granted(activity_id: str, student_id: str, session=None) -> bool:
        """
        Flip reward_granted once the grading reward has been written.
        Returns True only for the caller that flipped it.
        """
        claimed = await Database.submissions().find_one_and_update(
            {"activity_id": activity_id, "student_id": student_id, "reward_granted": False},
            {"$set": {"reward_granted": True, "updated_at": datetime.utcnow()}},
            session=session
        )
        return claimed is not None

    @staticmethod
    async def get_submission(activity_id: str, student_id: str, session=None) -> Optional[Submission]:
        doc = await Database.submissions().find_one(
            {"activity_id": activity_id, "student_id": student_id}, session=session
        )
        return Submission.from_mongo(doc)

    @staticmethod
    async def count_passing(student_id: str, class_id: str, passing_grade: float, session=None) -> int:
        return await Database.submissions().count_documents(
            {"student_id": student_id, "class_id": class_id, "score": {"$gte": passing_grade}},
            session=session
        )

    @staticmethod
    async def passed_activity_ids(student_id: str, activity_ids: List[str], passing_grade: float,
                                  session=None) -> Set[str]:
        cursor = Database.submissions().find(
            {"student_id": student_id, "activity_id": {"$in": activity_ids}, "score": {"$gte": passing_grade}},
            {"activity_id": 1},
            session=session
        )
        return {doc["activity_id"] async for doc in cursor}

    @staticmethod
    async def has_any(student_id: str, class_id: str, session=None) -> bool:
        doc = await Database.submissions().find_one({"student_id": student_id, "class_id": class_id},
                                                    session=session)
        return doc is not None

    @staticmethod
    async def get_recent_submissions(student_id: str, class_id: str, session=None) -> List[Submission]:
        """Delivered submissions, most recent first."""
        cursor = Database.submissions().find(
            {"student_id": student_id, "class_id": class_id, "submitted_at": {"$ne": None}},
            session=session
        ).sort("submitted_at", -1)
        return [Submission(**doc) async for doc in cursor]


class AttendanceService:
    @staticmethod
    async def record(student_id: str, class_id: str, date: datetime, present: bool) -> AttendanceRecord:
        record = AttendanceRecord(student_id=student_id, class_id=class_id, date=date, present=present)
        await Database.attendance().insert_one(record.to_mongo())
        return record

    @staticmethod
    async def get_recent_attendance(student_id: str, class_id: str, session=None) -> List[AttendanceRecord]:
        cursor = Database.attendance().find(
            {"student_id": student_id, "class_id": class_id}, session=session
        ).sort("date", -1)
        return [AttendanceRecord(**doc) async for doc in cursor]


class BehaviorService:
    @staticmethod
    async def create_type(behavior_type: BehaviorType) -> BehaviorType:
        await Database.behavior_types().update_one(
            {"behavior_type_id": behavior_type.behavior_type_id},
            {"$setOnInsert": behavior_type.to_mongo()},
            upsert=True
        )
        return behavior_type

    @staticmethod
    async def get_type(behavior_type_id: str, session=None) -> BehaviorType:
        doc = await Database.behavior_types().find_one({"behavior_type_id": behavior_type_id}, session=session)
        if doc is None:
            raise NotFound("behavior type", behavior_type_id)
        return BehaviorType(**doc)

    @staticmethod
    async def log(event: BehaviorEvent, behavior_type: BehaviorType, uow: UnitOfWork = None) -> BehaviorRecord:
        uow = uow or UnitOfWork()
        record = BehaviorRecord(
            student_id=event.student_id,
            class_id=event.class_id,
            behavior_type_id=behavior_type.behavior_type_id,
            points=behavior_type.points,
            participation=behavior_type.participation,
            description=event.description,
            logged_at=event.logged_at or datetime.utcnow(),
        )
        await Database.behavior_records().insert_one(record.to_mongo(), session=uow.session)
        return record

    @staticmethod
    async def get_recent_records(student_id: str, class_id: str, session=None) -> List[BehaviorRecord]:
        cursor = Database.behavior_records().find(
            {"student_id": student_id, "class_id": class_id}, session=session
        ).sort("logged_at", -1)
        return [BehaviorRecord(**doc) async for doc in cursor]

    @staticmethod
    async def count_participation(student_id: str, class_id: str, session=None) -> int:
        return await Database.behavior_records().count_documents(
            {"student_id": student_id, "class_id": class_id, "participation": True}, session=session
        )
