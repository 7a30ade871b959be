from __future__ import annotations

from collections.abc import Iterable, Mapping

from jobchat.schemas.messages import Conversation, Message, Profile
from jobchat.schemas.notifications import Notification


def aggregate_conversations(
    self_id: str,
    messages: Iterable[Message],
    profiles: Mapping[str, Profile] | None = None,
) -> list[Conversation]:
    """Group ``self_id``'s messages into one summary per counterpart, most recent first.

    Conversations whose last messages share a timestamp keep the order in which
    their counterparts first appear in ``messages``.
    """

    profiles = profiles or {}
    last: dict[str, Message] = {}
    unread: dict[str, int] = {}
    application_ids: dict[str, tuple[Message, str]] = {}

    for message in messages:
        if self_id not in (message.sender_id, message.receiver_id):
            continue
        counterpart_id = message.counterpart_of(self_id)

        current = last.get(counterpart_id)
        if current is None or message.created_at > current.created_at:
            last[counterpart_id] = message
        unread.setdefault(counterpart_id, 0)
        if message.receiver_id == self_id and not message.read:
            unread[counterpart_id] += 1

        if message.application_id:
            tagged = application_ids.get(counterpart_id)
            if tagged is None or message.created_at > tagged[0].created_at:
                application_ids[counterpart_id] = (message, message.application_id)

    conversations = [
        Conversation(
            counterpart_id=counterpart_id,
            counterpart=profiles.get(counterpart_id),
            last_message=message,
            unread_count=unread[counterpart_id],
            application_id=application_ids[counterpart_id][1] if counterpart_id in application_ids else None,
        )
        for counterpart_id, message in last.items()
    ]
    # sorted() is stable with reverse=True, so equal timestamps keep first-seen order.
    return sorted(conversations, key=lambda row: row.last_message.created_at, reverse=True)


def merge_messages(pulled: Iterable[Message], pending: Iterable[Message] = ()) -> list[Message]:
    """Return ``pulled`` plus any ``pending`` message it lacks, one entry per id, oldest first."""

    merged: dict[str, Message] = {}
    for message in pulled:
        merged[message.id] = message
    for message in pending:
        merged.setdefault(message.id, message)
    return sorted(merged.values(), key=lambda row: row.created_at)


def count_unread(rows: Iterable[Message | Notification], *, receiver_id: str | None = None) -> int:
    total = 0
    for row in rows:
        if row.read:
            continue
        if receiver_id is not None and getattr(row, "receiver_id", receiver_id) != receiver_id:
            continue
        total += 1
    return total


def latest_first(notifications: Iterable[Notification]) -> list[Notification]:
    return sorted(notifications, key=lambda row: row.created_at, reverse=True)
