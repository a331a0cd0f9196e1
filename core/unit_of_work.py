from dataclasses import dataclass, field
from typing import Any, List, Optional

from core.models.notification import Notification


@dataclass
class UnitOfWork:
    """
    State shared by every step of one external event.

    `session` is the Mongo session of the enclosing transaction (None when
    transactions are disabled). Notifications are buffered here and only
    dispatched once the transaction has committed.
    """
    session: Optional[Any] = None
    notifications: List[Notification] = field(default_factory=list)
    experience_changes: List[Any] = field(default_factory=list)

    def notify(self, notification: Notification):
        self.notifications.append(notification)
