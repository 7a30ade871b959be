from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

NotificationType = Literal[
    "job_created",
    "application_received",
    "application_status_changed",
    "job_viewed",
]


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    type: NotificationType
    job_id: str | None = None
    application_id: str | None = None
    job_title: str | None = None
    message: str
    read: bool = False
    created_at: datetime


class NotificationsOut(BaseModel):
    notifications: list[Notification] = Field(default_factory=list)
    unread_count: NonNegativeInt = 0


class MarkReadOut(BaseModel):
    updated: NonNegativeInt
    unread_count: NonNegativeInt
