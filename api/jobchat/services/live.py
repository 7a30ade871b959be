"""Shared push/pull reconciliation for views over the message and notification stores.

A view pulls its rows from the store, listens on the change feed for rows that
concern its owner, and re-pulls when told something changed. Bursts of events
inside the debounce window collapse into a single pull. If the feed is down the
view keeps working pull-only and keeps trying to subscribe in the background.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from jobchat.core.telemetry import inbox_span
from jobchat.services.change_feed import ChangeEvent, ChangeFeed, ChangeFilter, Subscription
from jobchat.services.errors import StoreError, SubscriptionError
from jobchat.services.repository import InboxRepository, RepositoryError, RepositoryValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ViewT = TypeVar("ViewT", bound="LiveView")


class ViewState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    SENDING = "sending"
    RECONCILING = "reconciling"
    ERROR = "error"
    CLOSED = "closed"


Observer = Callable[["LiveView"], None]


class LiveView:
    table: str = ""
    filter_column: str = ""

    def __init__(
        self,
        *,
        self_id: str,
        repository: InboxRepository,
        change_feed: ChangeFeed,
        store_timeout_seconds: float = 10.0,
        debounce_seconds: float = 0.05,
        resubscribe_base_seconds: float = 1.0,
        resubscribe_max_seconds: float = 30.0,
    ) -> None:
        self.self_id = self_id
        self.state = ViewState.LOADING
        self.last_error: StoreError | None = None
        self._repository = repository
        self._change_feed = change_feed
        self._store_timeout_seconds = store_timeout_seconds
        self._debounce_seconds = max(0.0, debounce_seconds)
        self._resubscribe_base_seconds = max(0.01, resubscribe_base_seconds)
        self._resubscribe_max_seconds = max(self._resubscribe_base_seconds, resubscribe_max_seconds)
        self._subscription: Subscription | None = None
        self._observers: list[Observer] = []
        self._reconcile_task: asyncio.Task[None] | None = None
        self._reconcile_requested = False
        self._resubscribe_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def push_connected(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def open(self: ViewT, *, live: bool = True) -> ViewT:
        """Subscribe (when ``live``) and run the initial pull.

        Subscribing first means a change landing during the initial pull still
        triggers a follow-up pull.
        """

        if live:
            await self._subscribe()
        await self.refresh()
        logger.info("%s opened for user=%s live=%s", type(self).__name__, self.self_id, live)
        return self

    async def refresh(self) -> None:
        if self._closed:
            return
        previous_state = self.state
        if previous_state is not ViewState.LOADING:
            self._set_state(ViewState.RECONCILING)

        with inbox_span("live.pull", user_id=self.self_id, view=type(self).__name__):
            try:
                await self._pull()
            except StoreError as exc:
                self._fail(exc)
                raise
            except BaseException:
                self._set_state(previous_state)
                raise

        self._ready()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        for task in (self._reconcile_task, self._resubscribe_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

        self.state = ViewState.CLOSED
        self._observers.clear()
        logger.info("%s closed for user=%s", type(self).__name__, self.self_id)

    async def __aenter__(self: ViewT) -> ViewT:
        return await self.open()

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def observe(self, observer: Observer) -> Callable[[], None]:
        """Call ``observer`` whenever the view's data changes or it enters ERROR."""

        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    async def _pull(self) -> None:
        raise NotImplementedError

    def _change_filter(self) -> ChangeFilter:
        return ChangeFilter(column=self.filter_column, value=self.self_id)

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._store_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"{operation} timed out after {self._store_timeout_seconds:.1f}s") from exc
        except RepositoryValidationError as exc:
            raise StoreError(f"{operation} rejected: {exc}", retryable=False) from exc
        except RepositoryError as exc:
            raise StoreError(f"{operation} failed: {exc}") from exc

    def _set_state(self, state: ViewState) -> None:
        if not self._closed:
            self.state = state

    def _ready(self) -> None:
        self.last_error = None
        self._set_state(ViewState.READY)
        self._notify()

    def _fail(self, exc: StoreError) -> None:
        self.last_error = exc
        self._set_state(ViewState.ERROR)
        logger.warning("%s store failure for user=%s: %s", type(self).__name__, self.self_id, exc)
        self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("%s observer failed", type(self).__name__)

    async def _subscribe(self) -> bool:
        try:
            self._subscription = await asyncio.wait_for(
                self._change_feed.subscribe(self.table, self._change_filter(), self._on_change),
                timeout=self._store_timeout_seconds,
            )
        except (SubscriptionError, asyncio.TimeoutError) as exc:
            logger.warning(
                "%s push unavailable for user=%s; continuing pull-only: %s",
                type(self).__name__,
                self.self_id,
                str(exc) or "timed out",
            )
            self._schedule_resubscribe()
            return False
        return True

    def _schedule_resubscribe(self) -> None:
        if self._closed:
            return
        if self._resubscribe_task is None or self._resubscribe_task.done():
            self._resubscribe_task = asyncio.get_running_loop().create_task(self._resubscribe_loop())

    async def _resubscribe_loop(self) -> None:
        backoff = self._resubscribe_base_seconds
        while not self._closed and self._subscription is None:
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (1.0 + jitter), self._resubscribe_max_seconds)
            await asyncio.sleep(sleep_for)
            backoff = min(backoff * 2.0, self._resubscribe_max_seconds)
            if self._closed:
                return
            try:
                self._subscription = await asyncio.wait_for(
                    self._change_feed.subscribe(self.table, self._change_filter(), self._on_change),
                    timeout=self._store_timeout_seconds,
                )
            except (SubscriptionError, asyncio.TimeoutError) as exc:
                logger.warning("%s resubscribe failed: %s; retry in <=%.1fs", type(self).__name__, exc, backoff)
                continue
            logger.info("%s push restored for user=%s", type(self).__name__, self.self_id)
            self._on_change(ChangeEvent(table=self.table, operation="RESYNC"))

    def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self._reconcile_requested = True
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_loop())

    async def _reconcile_loop(self) -> None:
        # Events arriving while sleeping fold into the pull below; events
        # arriving during the pull request one more round.
        while self._reconcile_requested and not self._closed:
            await asyncio.sleep(self._debounce_seconds)
            self._reconcile_requested = False
            try:
                await self.refresh()
            except StoreError:
                logger.warning("%s reconciliation failed; waiting for the next change", type(self).__name__)
            except Exception:
                logger.exception("%s reconciliation crashed; waiting for the next change", type(self).__name__)
