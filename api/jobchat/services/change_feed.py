"""Push channel delivering row-change events to subscribed views.

Events only tell a view that something relevant changed; views re-pull the
authoritative rows from the store instead of trusting the payload.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from jobchat.services.errors import SubscriptionError

logger = logging.getLogger(__name__)

ChangeOperation = Literal["INSERT", "UPDATE", "RESYNC"]
CHANGE_OPERATIONS = {"INSERT", "UPDATE", "RESYNC"}


@dataclass(frozen=True, slots=True)
class ChangeFilter:
    column: str
    value: str

    def matches(self, row: dict[str, Any]) -> bool:
        value = row.get(self.column)
        return value is not None and str(value) == self.value


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    operation: ChangeOperation
    row: dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


class ChangeFeed(Protocol):
    async def subscribe(self, table: str, change_filter: ChangeFilter, callback: ChangeCallback) -> Subscription:
        ...

    async def unsubscribe(self, subscription: Subscription) -> None:
        ...


class Subscription:
    """Handle for one live registration. Releasing it more than once is a no-op."""

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        change_filter: ChangeFilter,
        callback: ChangeCallback,
    ) -> None:
        self.id = uuid4().hex
        self.table = table
        self.change_filter = change_filter
        self._feed = feed
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def wants(self, event: ChangeEvent) -> bool:
        if not self._active or event.table != self.table:
            return False
        return event.operation == "RESYNC" or self.change_filter.matches(event.row)

    def deliver(self, event: ChangeEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.exception("change callback failed for subscription=%s table=%s", self.id, self.table)

    def deactivate(self) -> bool:
        was_active = self._active
        self._active = False
        return was_active

    async def unsubscribe(self) -> None:
        await self._feed.unsubscribe(self)


class _SubscriptionRegistry:
    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _register(self, table: str, change_filter: ChangeFilter, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, table, change_filter, callback)  # type: ignore[arg-type]
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            "subscribed id=%s table=%s filter=%s=%s",
            subscription.id,
            table,
            change_filter.column,
            change_filter.value,
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.deactivate():
            self._subscriptions.pop(subscription.id, None)
            logger.debug("unsubscribed id=%s table=%s", subscription.id, subscription.table)

    def dispatch(self, event: ChangeEvent) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.wants(event):
                subscription.deliver(event)
                delivered += 1
        return delivered


class InMemoryChangeFeed(_SubscriptionRegistry):
    """Process-local feed; ``publish`` is called by the in-memory store on writes."""

    async def subscribe(self, table: str, change_filter: ChangeFilter, callback: ChangeCallback) -> Subscription:
        return self._register(table, change_filter, callback)

    def publish(self, table: str, row: dict[str, Any], operation: ChangeOperation = "INSERT") -> int:
        return self.dispatch(ChangeEvent(table=table, operation=operation, row=dict(row)))


class PostgresChangeFeed(_SubscriptionRegistry):
    """Feed backed by Postgres LISTEN/NOTIFY on a single dedicated connection.

    Triggers publish ``{"table", "operation", "row"}`` JSON documents on
    ``channel``. When the listening connection drops, it is re-established with
    exponential backoff and every subscription receives a RESYNC event so its
    view re-pulls whatever was missed in between.
    """

    def __init__(
        self,
        database_url: str | None,
        *,
        channel: str,
        reconnect_base_seconds: float,
        reconnect_max_seconds: float,
    ) -> None:
        super().__init__()
        self.database_url = database_url
        self.channel = channel
        self.reconnect_base_seconds = max(0.01, reconnect_base_seconds)
        self.reconnect_max_seconds = max(self.reconnect_base_seconds, reconnect_max_seconds)
        self._conn: asyncpg.Connection | None = None
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closed = False

    async def subscribe(self, table: str, change_filter: ChangeFilter, callback: ChangeCallback) -> Subscription:
        await self._ensure_connected()
        return self._register(table, change_filter, callback)

    async def close(self) -> None:
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)
        if self._conn is not None:
            conn, self._conn = self._conn, None
            if not conn.is_closed():
                await conn.close()

    async def _ensure_connected(self) -> None:
        if not self.database_url:
            raise SubscriptionError("JC_DATABASE_URL is required for the change feed")

        async with self._connect_lock:
            if self._conn is not None and not self._conn.is_closed():
                return
            try:
                conn = await asyncpg.connect(dsn=self.database_url)
                await conn.add_listener(self.channel, self._on_notify)
            except Exception as exc:  # pragma: no cover - depends on environment
                raise SubscriptionError("change feed unavailable") from exc
            conn.add_termination_listener(self._on_terminated)
            self._conn = conn
            logger.info("change feed listening on channel=%s", self.channel)

    def _on_notify(self, _conn: Any, _pid: int, _channel: str, payload: str) -> None:
        event = parse_change_payload(payload)
        if event is None:
            logger.warning("ignored malformed change payload on channel=%s", self.channel)
            return
        self.dispatch(event)

    def _on_terminated(self, _conn: Any) -> None:
        self._conn = None
        if self._closed:
            return
        logger.warning("change feed connection lost on channel=%s; reconnecting", self.channel)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        backoff = self.reconnect_base_seconds
        while not self._closed:
            try:
                await self._ensure_connected()
            except SubscriptionError as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.reconnect_max_seconds)
                logger.warning("change feed reconnect failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
                continue

            logger.info("change feed connection restored on channel=%s", self.channel)
            for table in sorted({subscription.table for subscription in self._subscriptions.values()}):
                self.dispatch(ChangeEvent(table=table, operation="RESYNC"))
            return


def parse_change_payload(payload: str) -> ChangeEvent | None:
    try:
        document = json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(document, dict):
        return None

    table = document.get("table")
    operation = document.get("operation")
    row = document.get("row") or {}
    if not isinstance(table, str) or not table or operation not in CHANGE_OPERATIONS or not isinstance(row, dict):
        return None
    return ChangeEvent(table=table, operation=operation, row=row)
