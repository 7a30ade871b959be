from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, TypeVar

from jobchat.core.config import Settings, get_settings
from jobchat.core.permissions import PermissionGate
from jobchat.services.change_feed import ChangeFeed, PostgresChangeFeed
from jobchat.services.live import LiveView
from jobchat.services.notifications import NotificationAggregator
from jobchat.services.repository import InboxRepository, get_repository
from jobchat.services.session import ConversationList, ConversationSession, RecentMessages
from jobchat.services.store import InMemoryStore

logger = logging.getLogger(__name__)

ViewT = TypeVar("ViewT", bound=LiveView)


class Inbox:
    """Entry point for UI surfaces: opens independent views bound to one user.

    Views never share state; each holds its own subscription and cache, so the
    store stays the only source of truth.
    """

    def __init__(
        self,
        repository: InboxRepository,
        change_feed: ChangeFeed,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.repository = repository
        self.change_feed = change_feed
        self.settings = settings or get_settings()
        self.gate = PermissionGate(repository)

    async def open_conversation(
        self,
        self_id: str,
        counterpart_id: str,
        application_id: str | None = None,
        *,
        live: bool = True,
    ) -> ConversationSession:
        session = ConversationSession(
            counterpart_id=counterpart_id,
            application_id=application_id,
            gate=self.gate,
            **self._view_options(self_id),
        )
        return await self._open(session, live=live)

    async def list_conversations(self, self_id: str, *, live: bool = True) -> ConversationList:
        return await self._open(ConversationList(**self._view_options(self_id)), live=live)

    async def open_notifications(self, self_id: str, *, live: bool = True) -> NotificationAggregator:
        aggregator = NotificationAggregator(limit=self.settings.notifications_limit, **self._view_options(self_id))
        return await self._open(aggregator, live=live)

    async def open_recent_messages(self, self_id: str, *, live: bool = True) -> RecentMessages:
        recent = RecentMessages(limit=self.settings.recent_messages_limit, **self._view_options(self_id))
        return await self._open(recent, live=live)

    async def close(self) -> None:
        close_feed = getattr(self.change_feed, "close", None)
        if close_feed is not None:
            await close_feed()
        close_repository = getattr(self.repository, "close", None)
        if close_repository is not None:
            await close_repository()

    def _view_options(self, self_id: str) -> dict[str, Any]:
        return {
            "self_id": self_id,
            "repository": self.repository,
            "change_feed": self.change_feed,
            "store_timeout_seconds": self.settings.store_timeout_seconds,
            "debounce_seconds": self.settings.reconcile_debounce_seconds,
            "resubscribe_base_seconds": self.settings.feed_reconnect_base_seconds,
            "resubscribe_max_seconds": self.settings.feed_reconnect_max_seconds,
        }

    async def _open(self, view: ViewT, *, live: bool) -> ViewT:
        try:
            return await view.open(live=live)
        except BaseException:
            # Release the subscription taken before the failed initial pull.
            await view.close()
            raise


@lru_cache
def get_inbox() -> Inbox:
    settings = get_settings()
    if settings.store_backend == "memory":
        logger.info("using in-memory store; data is lost on restart")
        store = InMemoryStore()
        return Inbox(store, store.feed, settings=settings)

    return Inbox(
        get_repository(),
        PostgresChangeFeed(
            settings.database_url,
            channel=settings.feed_channel,
            reconnect_base_seconds=settings.feed_reconnect_base_seconds,
            reconnect_max_seconds=settings.feed_reconnect_max_seconds,
        ),
        settings=settings,
    )
