from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Protocol, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc
from pydantic import BaseModel, ValidationError

from jobchat.core.config import get_settings
from jobchat.schemas.messages import Application, Message, Profile
from jobchat.schemas.notifications import Notification

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryValidationError(RepositoryError):
    """Raised when a write violates a constraint, e.g. an unknown participant."""


class InboxRepository(Protocol):
    async def append_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        application_id: str | None = None,
    ) -> Message:
        ...

    async def list_conversation_messages(self, user_a: str, user_b: str) -> list[Message]:
        ...

    async def list_user_messages(self, user_id: str) -> list[Message]:
        ...

    async def list_received_messages(self, user_id: str, limit: int) -> list[Message]:
        ...

    async def mark_messages_read(self, *, receiver_id: str, sender_id: str | None = None) -> int:
        ...

    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Profile]:
        ...

    async def get_application(self, application_id: str) -> Application | None:
        ...

    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        ...

    async def get_notification(self, *, user_id: str, notification_id: str) -> Notification | None:
        ...

    async def mark_notification_read(self, *, user_id: str, notification_id: str) -> int:
        ...

    async def mark_all_notifications_read(self, user_id: str) -> int:
        ...


_MESSAGE_COLUMNS = """
  id::text as id,
  sender_id::text as sender_id,
  receiver_id::text as receiver_id,
  content,
  created_at,
  read,
  application_id::text as application_id
"""


_NOTIFICATION_SELECT = """
select
  n.id::text as id,
  n.user_id::text as user_id,
  n.type::text as type,
  n.job_id::text as job_id,
  n.application_id::text as application_id,
  coalesce(j.title, aj.title) as job_title,
  n.message,
  n.read,
  n.created_at
from notifications n
left join jobs j on j.id = n.job_id
left join applications a on a.id = n.application_id
left join jobs aj on aj.id = a.job_id
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def append_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        application_id: str | None = None,
    ) -> Message:
        pool = await self._get_pool()
        async with self._translate_errors():
            row = await pool.fetchrow(
                f"""
                insert into messages (sender_id, receiver_id, content, application_id)
                values ($1::uuid, $2::uuid, $3, $4::uuid)
                returning {_MESSAGE_COLUMNS}
                """,
                sender_id,
                receiver_id,
                content,
                application_id,
            )

        message = _to_model(Message, row)
        if message is None:
            raise RepositoryValidationError("store returned a malformed message row")
        return message

    async def list_conversation_messages(self, user_a: str, user_b: str) -> list[Message]:
        pool = await self._get_pool()
        async with self._translate_errors():
            rows = await pool.fetch(
                f"""
                select {_MESSAGE_COLUMNS}
                from messages
                where (sender_id = $1::uuid and receiver_id = $2::uuid)
                   or (sender_id = $2::uuid and receiver_id = $1::uuid)
                order by created_at asc, id asc
                """,
                user_a,
                user_b,
            )
        return _to_models(Message, rows)

    async def list_user_messages(self, user_id: str) -> list[Message]:
        pool = await self._get_pool()
        async with self._translate_errors():
            rows = await pool.fetch(
                f"""
                select {_MESSAGE_COLUMNS}
                from messages
                where sender_id = $1::uuid or receiver_id = $1::uuid
                order by created_at asc, id asc
                """,
                user_id,
            )
        return _to_models(Message, rows)

    async def list_received_messages(self, user_id: str, limit: int) -> list[Message]:
        pool = await self._get_pool()
        async with self._translate_errors():
            rows = await pool.fetch(
                f"""
                select {_MESSAGE_COLUMNS}
                from messages
                where receiver_id = $1::uuid
                order by created_at desc, id desc
                limit $2
                """,
                user_id,
                max(1, limit),
            )
        return _to_models(Message, rows)

    async def mark_messages_read(self, *, receiver_id: str, sender_id: str | None = None) -> int:
        pool = await self._get_pool()
        async with self._translate_errors():
            status = await pool.execute(
                """
                update messages
                set read = true
                where receiver_id = $1::uuid
                  and read = false
                  and ($2::uuid is null or sender_id = $2::uuid)
                """,
                receiver_id,
                sender_id,
            )
        return _affected_rows(status)

    async def get_profile(self, user_id: str) -> Profile | None:
        profiles = await self.get_profiles([user_id])
        return profiles.get(user_id)

    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, Profile]:
        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        pool = await self._get_pool()
        async with self._translate_errors():
            rows = await pool.fetch(
                """
                select
                  id::text as id,
                  full_name,
                  avatar_url,
                  coalesce(is_private, false) as is_private,
                  coalesce(accept_dm, false) as accept_dm
                from profiles
                where id = any($1::uuid[])
                """,
                ids,
            )
        return {profile.id: profile for profile in _to_models(Profile, rows)}

    async def get_application(self, application_id: str) -> Application | None:
        pool = await self._get_pool()
        async with self._translate_errors():
            row = await pool.fetchrow(
                """
                select
                  a.id::text as id,
                  a.status::text as status,
                  a.student_id::text as student_id,
                  j.employer_id::text as employer_id
                from applications a
                left join jobs j on j.id = a.job_id
                where a.id = $1::uuid
                """,
                application_id,
            )
        if row is None:
            return None
        return _to_model(Application, row)

    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        pool = await self._get_pool()
        async with self._translate_errors():
            rows = await pool.fetch(
                f"""
                {_NOTIFICATION_SELECT}
                where n.user_id = $1::uuid
                order by n.created_at desc, n.id desc
                limit $2
                """,
                user_id,
                max(1, limit),
            )
        return _to_models(Notification, rows)

    async def get_notification(self, *, user_id: str, notification_id: str) -> Notification | None:
        pool = await self._get_pool()
        async with self._translate_errors():
            row = await pool.fetchrow(
                f"""
                {_NOTIFICATION_SELECT}
                where n.id = $1::uuid
                  and n.user_id = $2::uuid
                """,
                notification_id,
                user_id,
            )
        if row is None:
            return None
        return _to_model(Notification, row)

    async def mark_notification_read(self, *, user_id: str, notification_id: str) -> int:
        pool = await self._get_pool()
        async with self._translate_errors():
            status = await pool.execute(
                """
                update notifications
                set read = true
                where id = $1::uuid
                  and user_id = $2::uuid
                  and read = false
                """,
                notification_id,
                user_id,
            )
        return _affected_rows(status)

    async def mark_all_notifications_read(self, user_id: str) -> int:
        pool = await self._get_pool()
        async with self._translate_errors():
            status = await pool.execute(
                """
                update notifications
                set read = true
                where user_id = $1::uuid
                  and read = false
                """,
                user_id,
            )
        return _affected_rows(status)

    @asynccontextmanager
    async def _translate_errors(self) -> AsyncIterator[None]:
        try:
            yield
        except (ValueError, pg_exc.DataError) as exc:
            # asyncpg raises a ValueError subclass client-side for arguments it
            # cannot encode, such as a non-uuid string bound to a uuid parameter.
            raise RepositoryValidationError(f"invalid query argument: {exc}") from exc
        except pg_exc.IntegrityConstraintViolationError as exc:
            raise RepositoryValidationError(f"rejected by store: {exc}") from exc
        except (OSError, pg_exc.PostgresConnectionError, pg_exc.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        except pg_exc.QueryCanceledError as exc:
            raise RepositoryUnavailableError("database query timed out") from exc
        except pg_exc.PostgresError as exc:
            raise RepositoryError(f"database error: {type(exc).__name__}") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


def _to_model(model: type[ModelT], row: Any) -> ModelT | None:
    try:
        return model.model_validate(dict(row))
    except ValidationError as exc:
        logger.warning("dropped malformed %s row: %s", model.__name__, exc.errors(include_url=False))
        return None


def _to_models(model: type[ModelT], rows: Iterable[Any]) -> list[ModelT]:
    return [item for item in (_to_model(model, row) for row in rows) if item is not None]


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3".
    try:
        return int(status.rsplit(" ", maxsplit=1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.store_timeout_seconds,
    )
