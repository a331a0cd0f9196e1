from typing import Iterable

from loguru import logger

from core.database import Database
from core.models.notification import Notification


class NotificationService:
    """Builds notification payloads and stores them once the event has committed."""

    @staticmethod
    def level_up(student_id: str, class_id: str, previous_level: int, new_level: int,
                 total_experience: int) -> Notification:
        return Notification(
            recipient_id=student_id,
            title="You leveled up!",
            message=f"Your character reached level {new_level}. Congratulations!",
            kind="success",
            data={
                "class_id": class_id,
                "previous_level": previous_level,
                "new_level": new_level,
                "total_experience": total_experience,
            },
        )

    @staticmethod
    def badge_awarded(student_id: str, badge_id: str, class_id: str, badge_name: str,
                      bonus_experience: int) -> Notification:
        return Notification(
            recipient_id=student_id,
            title="Badge earned!",
            message=f"You earned the badge: {badge_name}",
            kind="success",
            data={
                "student_id": student_id,
                "badge_id": badge_id,
                "class_id": class_id,
                "bonus_experience": bonus_experience,
            },
        )

    @staticmethod
    def mission_completed(student_id: str, mission_id: str, class_id: str, title: str) -> Notification:
        return Notification(
            recipient_id=student_id,
            title="Mission complete!",
            message=f"You completed the mission: {title}",
            kind="success",
            data={"mission_id": mission_id, "class_id": class_id},
        )

    @staticmethod
    def activity_graded(student_id: str, activity_id: str, class_id: str, title: str, score: float,
                        experience: int, currency: int) -> Notification:
        return Notification(
            recipient_id=student_id,
            title="Activity graded",
            message=f"Your submission for '{title}' was graded. Score: {score:g}",
            kind="info",
            data={
                "activity_id": activity_id,
                "class_id": class_id,
                "score": score,
                "experience": experience,
                "currency": currency,
            },
        )

    @staticmethod
    def purchase_made(student_id: str, item_id: str, class_id: str, item_name: str, price: int) -> Notification:
        return Notification(
            recipient_id=student_id,
            title="Purchase complete",
            message=f"You bought: {item_name}",
            kind="success",
            data={"item_id": item_id, "class_id": class_id, "price": price},
        )

    @staticmethod
    async def dispatch(notifications: Iterable[Notification]) -> int:
        """
        Persist payloads for the delivery layer. Runs after commit: a failure here
        is logged and never undoes the progression state.
        """
        stored = 0
        for notification in notifications:
            try:
                await Database.notifications().insert_one(notification.to_mongo())
                stored += 1
            except Exception as e:
                logger.error(f"Failed to store notification for {notification.recipient_id}: {e}")
        return stored
