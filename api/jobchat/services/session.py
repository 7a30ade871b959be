from __future__ import annotations

import logging
from typing import Any

from jobchat.core.content_policy import validate
from jobchat.core.permissions import PermissionGate
from jobchat.core.telemetry import inbox_span
from jobchat.schemas.messages import Conversation, Message
from jobchat.services.aggregation import aggregate_conversations, count_unread, merge_messages
from jobchat.services.errors import InboxError, PermissionDeniedError, PolicyViolationError, StoreError
from jobchat.services.live import LiveView, ViewState
from jobchat.services.store import MESSAGES_TABLE

logger = logging.getLogger(__name__)


class ConversationSession(LiveView):
    """One open conversation between ``self_id`` and ``counterpart_id``.

    Sent messages are shown as soon as the store accepts them and stay in the
    list until a pull returns them; rows are keyed by id, so a message delivered
    both by ``send`` and by a later pull appears once.
    """

    table = MESSAGES_TABLE
    filter_column = "receiver_id"

    def __init__(
        self,
        *,
        counterpart_id: str,
        gate: PermissionGate,
        application_id: str | None = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.counterpart_id = counterpart_id
        self.application_id = application_id
        self._gate = gate
        self._messages: list[Message] = []
        self._pending: dict[str, Message] = {}

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    async def send(self, content: str, *, application_id: str | None = None) -> Message:
        """Validate, authorize, and store one message.

        Raises ``PolicyViolationError`` or ``PermissionDeniedError`` before the
        store is touched, and ``StoreError`` if the write fails; in every case
        the current message list is left as it was.
        """

        if self.closed:
            raise InboxError("conversation is closed")

        body = content.strip()
        violation = validate(body)
        if violation is not None:
            logger.info("message rejected by content policy kind=%s sender=%s", violation.kind, self.self_id)
            raise PolicyViolationError(violation)

        application_id = application_id or self.application_id
        previous_state = self.state
        self._set_state(ViewState.SENDING)

        with inbox_span("conversation.send", user_id=self.self_id, counterpart_id=self.counterpart_id):
            try:
                allowed = await self._call(
                    "check permission",
                    self._gate.can_message(self.self_id, self.counterpart_id, application_id),
                )
                if not allowed:
                    logger.info("message denied sender=%s receiver=%s", self.self_id, self.counterpart_id)
                    raise PermissionDeniedError()

                message = await self._call(
                    "send message",
                    self._repository.append_message(
                        sender_id=self.self_id,
                        receiver_id=self.counterpart_id,
                        content=body,
                        application_id=application_id,
                    ),
                )
            except StoreError as exc:
                self._fail(exc)
                raise
            except BaseException:
                self._set_state(previous_state)
                raise

        self._pending[message.id] = message
        self._messages = merge_messages(self._messages, [message])
        self._ready()
        return message

    async def _pull(self) -> None:
        pulled = await self._call(
            "load conversation",
            self._repository.list_conversation_messages(self.self_id, self.counterpart_id),
        )
        for message in pulled:
            self._pending.pop(message.id, None)
        self._messages = merge_messages(pulled, self._pending.values())

        if any(self._is_unread_incoming(message) for message in self._messages):
            await self._call(
                "mark conversation read",
                self._repository.mark_messages_read(receiver_id=self.self_id, sender_id=self.counterpart_id),
            )
            self._messages = [
                message.model_copy(update={"read": True}) if self._is_unread_incoming(message) else message
                for message in self._messages
            ]

    def _is_unread_incoming(self, message: Message) -> bool:
        return not message.read and message.sender_id == self.counterpart_id and message.receiver_id == self.self_id


class ConversationList(LiveView):
    """Every conversation of ``self_id``, most recent first."""

    table = MESSAGES_TABLE
    filter_column = "receiver_id"

    def __init__(self, **options: Any) -> None:
        super().__init__(**options)
        self._conversations: list[Conversation] = []

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return tuple(self._conversations)

    @property
    def unread_total(self) -> int:
        return sum(conversation.unread_count for conversation in self._conversations)

    async def _pull(self) -> None:
        messages = await self._call("load conversations", self._repository.list_user_messages(self.self_id))
        counterpart_ids = {message.counterpart_of(self.self_id) for message in messages}
        profiles = await self._call("load profiles", self._repository.get_profiles(counterpart_ids))
        self._conversations = aggregate_conversations(self.self_id, messages, profiles)


class RecentMessages(LiveView):
    """Latest messages received by ``self_id`` for the navigation preview panel."""

    table = MESSAGES_TABLE
    filter_column = "receiver_id"

    def __init__(self, *, limit: int = 5, **options: Any) -> None:
        super().__init__(**options)
        self.limit = limit
        self._messages: list[Message] = []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def unread_count(self) -> int:
        return count_unread(self._messages, receiver_id=self.self_id)

    async def _pull(self) -> None:
        self._messages = await self._call(
            "load recent messages",
            self._repository.list_received_messages(self.self_id, self.limit),
        )
