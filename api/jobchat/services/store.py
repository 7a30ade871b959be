from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from uuid import uuid4

from jobchat.schemas.messages import Application, Message, Profile
from jobchat.schemas.notifications import Notification, NotificationType
from jobchat.services.change_feed import InMemoryChangeFeed
from jobchat.services.repository import RepositoryValidationError

MESSAGES_TABLE = "messages"
NOTIFICATIONS_TABLE = "notifications"


class InMemoryStore:
    """Process-local store with the same contract as ``PostgresRepository``.

    Writes are announced on ``feed`` the way the database triggers announce
    them on the NOTIFY channel.
    """

    def __init__(self, feed: InMemoryChangeFeed | None = None) -> None:
        self.feed = feed or InMemoryChangeFeed()
        self.messages: list[Message] = []
        self.profiles: dict[str, Profile] = {}
        self.applications: dict[str, Application] = {}
        self.notifications: list[Notification] = []

    def add_profile(self, profile: Profile) -> Profile:
        self.profiles[profile.id] = profile
        return profile

    def add_application(self, application: Application) -> Application:
        self.applications[application.id] = application
        return application

    def add_notification(
        self,
        *,
        user_id: str,
        type: NotificationType,
        message: str,
        job_id: str | None = None,
        application_id: str | None = None,
        job_title: str | None = None,
        read: bool = False,
        created_at: datetime | None = None,
    ) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            type=type,
            job_id=job_id,
            application_id=application_id,
            job_title=job_title,
            message=message,
            read=read,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.notifications.append(notification)
        self.feed.publish(NOTIFICATIONS_TABLE, notification.model_dump(mode="json"))
        return notification

    async def append_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        application_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Message:
        if not sender_id or not receiver_id:
            raise RepositoryValidationError("message requires both participants")
        if self.profiles and receiver_id not in self.profiles:
            raise RepositoryValidationError(f"unknown receiver: {receiver_id}")
        if application_id and application_id not in self.applications:
            raise RepositoryValidationError(f"unknown application: {application_id}")

        message = Message(
            id=str(uuid4()),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=created_at or datetime.now(timezone.utc),
            application_id=application_id,
        )
        self.messages.append(message)
        self.feed.publish(MESSAGES_TABLE, message.model_dump(mode="json"))
        return message

    async def list_conversation_messages(self, user_a: str, user_b: str) -> list[Message]:
        pair = {user_a, user_b}
        rows = [row for row in self.messages if {row.sender_id, row.receiver_id} == pair]
        return sorted(rows, key=lambda row: row.created_at)

    async def list_user_messages(self, user_id: str) -> list[Message]:
        rows = [row for row in self.messages if user_id in (row.sender_id, row.receiver_id)]
        return sorted(rows, key=lambda row: row.created_at)

    async def list_received_messages(self, user_id: str, limit: int) -> list[Message]:
        rows = [row for row in self.messages if row.receiver_id == user_id]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)[: max(1, limit)]

    async def mark_messages_read(self, *, receiver_id: str, sender_id: str | None = None) -> int:
        updated = 0
        for index, row in enumerate(self.messages):
            if row.read or row.receiver_id != receiver_id:
                continue
            if sender_id is not None and row.sender_id != sender_id:
                continue
            self.messages[index] = row.model_copy(update={"read": True})
            updated += 1
        if updated:
            self.feed.publish(MESSAGES_TABLE, {"receiver_id": receiver_id, "sender_id": sender_id}, "UPDATE")
        return updated

    async def get_profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Profile]:
        return {user_id: self.profiles[user_id] for user_id in user_ids if user_id in self.profiles}

    async def get_application(self, application_id: str) -> Application | None:
        return self.applications.get(application_id)

    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        rows = [row for row in self.notifications if row.user_id == user_id]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)[: max(1, limit)]

    async def get_notification(self, *, user_id: str, notification_id: str) -> Notification | None:
        for row in self.notifications:
            if row.id == notification_id and row.user_id == user_id:
                return row
        return None

    async def mark_notification_read(self, *, user_id: str, notification_id: str) -> int:
        for index, row in enumerate(self.notifications):
            if row.id != notification_id or row.user_id != user_id:
                continue
            if row.read:
                return 0
            self.notifications[index] = row.model_copy(update={"read": True})
            self.feed.publish(NOTIFICATIONS_TABLE, {"id": row.id, "user_id": user_id}, "UPDATE")
            return 1
        return 0

    async def mark_all_notifications_read(self, user_id: str) -> int:
        updated = 0
        for index, row in enumerate(self.notifications):
            if row.user_id == user_id and not row.read:
                self.notifications[index] = row.model_copy(update={"read": True})
                updated += 1
        if updated:
            self.feed.publish(NOTIFICATIONS_TABLE, {"user_id": user_id}, "UPDATE")
        return updated

    async def close(self) -> None:
        return None
