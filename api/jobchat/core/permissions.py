from __future__ import annotations

import logging
from typing import Protocol

from jobchat.schemas.messages import Application, Profile

logger = logging.getLogger(__name__)

ACCEPTED_STATUS = "accepted"


class RelationshipReader(Protocol):
    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    async def get_application(self, application_id: str) -> Application | None:
        ...


class PermissionGate:
    """Decides whether ``sender`` may open or continue a conversation with ``receiver``.

    With an application id the decision rests solely on that application being
    accepted (and, when the application names its participants, on it linking
    the two users). Without one, the receiver's privacy flags decide: only a
    private profile that also refuses direct messages is closed.
    """

    def __init__(self, reader: RelationshipReader) -> None:
        self._reader = reader

    async def can_message(
        self,
        sender_id: str,
        receiver_id: str,
        application_id: str | None = None,
    ) -> bool:
        if application_id:
            application = await self._reader.get_application(application_id)
            return application_allows(application, sender_id=sender_id, receiver_id=receiver_id)

        profile = await self._reader.get_profile(receiver_id)
        if profile is None:
            logger.info("permission denied: no profile for receiver=%s", receiver_id)
            return False
        return profile_allows(profile)


def profile_allows(profile: Profile) -> bool:
    return not profile.is_private or profile.accept_dm


def application_allows(application: Application | None, *, sender_id: str, receiver_id: str) -> bool:
    if application is None or application.status != ACCEPTED_STATUS:
        return False

    participants = {application.student_id, application.employer_id}
    if None in participants:
        return True
    return participants == {sender_id, receiver_id}
