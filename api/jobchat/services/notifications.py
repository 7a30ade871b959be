from __future__ import annotations

import logging
from typing import Any

from jobchat.core.telemetry import inbox_span
from jobchat.schemas.notifications import Notification
from jobchat.services.aggregation import count_unread, latest_first
from jobchat.services.errors import StoreError
from jobchat.services.live import LiveView
from jobchat.services.store import NOTIFICATIONS_TABLE

logger = logging.getLogger(__name__)


class NotificationAggregator(LiveView):
    """Notifications of ``self_id``, latest first, with a materialized unread counter.

    The counter is recomputed from the rows on every pull and adjusted locally
    by the mark operations in between.
    """

    table = NOTIFICATIONS_TABLE
    filter_column = "user_id"

    def __init__(self, *, limit: int = 20, **options: Any) -> None:
        super().__init__(**options)
        self.limit = limit
        self._notifications: list[Notification] = []
        self.unread_count = 0

    @property
    def notifications(self) -> tuple[Notification, ...]:
        return tuple(self._notifications)

    async def mark_as_read(self, notification_id: str) -> int:
        try:
            updated = await self._call(
                "mark notification read",
                self._repository.mark_notification_read(user_id=self.self_id, notification_id=notification_id),
            )
        except StoreError as exc:
            self._fail(exc)
            raise

        for index, notification in enumerate(self._notifications):
            if notification.id != notification_id:
                continue
            if not notification.read:
                self._notifications[index] = notification.model_copy(update={"read": True})
                self.unread_count = max(0, self.unread_count - 1)
            break
        self._ready()
        return updated

    async def find(self, notification_id: str) -> Notification | None:
        """Look a notification up locally, then in the store for rows outside the window."""

        for notification in self._notifications:
            if notification.id == notification_id:
                return notification
        return await self._call(
            "load notification",
            self._repository.get_notification(user_id=self.self_id, notification_id=notification_id),
        )

    async def mark_all_as_read(self) -> int:
        with inbox_span("notifications.mark_all_read", user_id=self.self_id):
            try:
                updated = await self._call(
                    "mark all notifications read",
                    self._repository.mark_all_notifications_read(self.self_id),
                )
            except StoreError as exc:
                self._fail(exc)
                raise

        self._notifications = [
            notification if notification.read else notification.model_copy(update={"read": True})
            for notification in self._notifications
        ]
        self.unread_count = 0
        self._ready()
        logger.debug("marked %s notifications read for user=%s", updated, self.self_id)
        return updated

    async def _pull(self) -> None:
        rows = await self._call(
            "load notifications",
            self._repository.list_notifications(self.self_id, self.limit),
        )
        self._notifications = latest_first(rows)
        self.unread_count = count_unread(self._notifications)
