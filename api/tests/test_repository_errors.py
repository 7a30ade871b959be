from __future__ import annotations

import asyncio
from typing import Any

import pytest
from asyncpg import exceptions as pg_exc
from asyncpg.exceptions._base import DataError as ArgumentDataError

from jobchat.core.config import Settings
from jobchat.schemas.messages import Profile
from jobchat.services.errors import StoreError
from jobchat.services.inbox import Inbox
from jobchat.services.live import ViewState
from jobchat.services.repository import (
    PostgresRepository,
    RepositoryError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from jobchat.services.store import InMemoryStore

ALICE = "11111111-1111-4111-8111-111111111111"
BOB = "22222222-2222-4222-8222-222222222222"


class StubPool:
    """Pool double whose query methods all raise ``error``."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    async def fetch(self, *_: Any) -> list[Any]:
        raise self.error

    async def fetchrow(self, *_: Any) -> Any:
        raise self.error

    async def execute(self, *_: Any) -> str:
        raise self.error

    async def close(self) -> None:
        return None


def _repository(error: BaseException) -> PostgresRepository:
    repository = PostgresRepository(database_url="postgresql://stub/jobchat", min_pool_size=1, max_pool_size=1)
    repository._pool = StubPool(error)
    return repository


def _bad_uuid() -> ArgumentDataError:
    return ArgumentDataError(
        "invalid input for query argument $1: 'not-a-uuid' "
        "(invalid UUID 'not-a-uuid': length must be between 32..36 characters, got 10)"
    )


def test_malformed_id_argument_is_a_validation_error() -> None:
    repository = _repository(_bad_uuid())

    async def scenario() -> None:
        with pytest.raises(RepositoryValidationError, match="not-a-uuid"):
            await repository.list_conversation_messages("not-a-uuid", BOB)
        with pytest.raises(RepositoryValidationError):
            await repository.mark_notification_read(user_id=ALICE, notification_id="not-a-uuid")
        with pytest.raises(RepositoryValidationError):
            await repository.get_notification(user_id=ALICE, notification_id="not-a-uuid")

    asyncio.run(scenario())


def test_constraint_violation_is_a_validation_error() -> None:
    error = pg_exc.ForeignKeyViolationError('violates foreign key constraint "messages_receiver_id_fkey"')
    repository = _repository(error)

    async def scenario() -> None:
        with pytest.raises(RepositoryValidationError):
            await repository.append_message(sender_id=ALICE, receiver_id=BOB, content="hello")

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "error",
    [
        ConnectionRefusedError("connection refused"),
        pg_exc.ConnectionDoesNotExistError("connection was closed in the middle of operation"),
        pg_exc.QueryCanceledError("canceling statement due to statement timeout"),
    ],
)
def test_connection_failures_are_unavailable_errors(error: BaseException) -> None:
    repository = _repository(error)

    async def scenario() -> None:
        with pytest.raises(RepositoryUnavailableError):
            await repository.list_user_messages(ALICE)

    asyncio.run(scenario())


def test_other_server_errors_are_repository_errors() -> None:
    repository = _repository(pg_exc.UndefinedTableError('relation "messages" does not exist'))

    async def scenario() -> None:
        with pytest.raises(RepositoryError, match="UndefinedTableError") as excinfo:
            await repository.list_user_messages(ALICE)
        assert not isinstance(excinfo.value, (RepositoryUnavailableError, RepositoryValidationError))

    asyncio.run(scenario())


def test_session_reports_malformed_counterpart_as_not_retryable() -> None:
    class RejectingStore(InMemoryStore):
        async def list_conversation_messages(self, user_a: str, user_b: str) -> list[Any]:
            return await _repository(_bad_uuid()).list_conversation_messages(user_a, user_b)

    store = RejectingStore()
    store.add_profile(Profile(id=ALICE, full_name="Alice"))
    inbox = Inbox(store, store.feed, settings=Settings(reconcile_debounce_seconds=0.0))

    async def scenario() -> StoreError:
        with pytest.raises(StoreError) as excinfo:
            await inbox.open_conversation(ALICE, "not-a-uuid")
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.retryable is False
    assert store.feed.subscription_count == 0


def test_server_error_leaves_the_view_in_error_state() -> None:
    missing_table = _repository(pg_exc.UndefinedTableError('relation "messages" does not exist'))

    class MissingTableStore(InMemoryStore):
        broken = False

        async def list_user_messages(self, user_id: str) -> list[Any]:
            if self.broken:
                return await missing_table.list_user_messages(user_id)
            return await super().list_user_messages(user_id)

    store = MissingTableStore()
    inbox = Inbox(store, store.feed, settings=Settings(reconcile_debounce_seconds=0.0))

    async def scenario() -> tuple[ViewState, StoreError | None]:
        view = await inbox.list_conversations(ALICE, live=False)
        store.broken = True
        with pytest.raises(StoreError):
            await view.refresh()
        result = view.state, view.last_error
        await view.close()
        return result

    state, last_error = asyncio.run(scenario())

    assert state is ViewState.ERROR
    assert last_error is not None and last_error.retryable is True
