from typing import Any, Dict, Literal

from pydantic import Field

from core.models.base import MongoModel


class Notification(MongoModel):
    """A user-facing message produced by the engine. Delivery is the caller's job."""
    recipient_id: str = Field(..., description="Student ID")
    title: str = Field(...)
    message: str = Field(default="")
    kind: Literal['info', 'success', 'warning'] = Field(default='info')
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
