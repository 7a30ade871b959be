from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

ApplicationStatus = Literal["pending", "accepted", "rejected", "withdrawn"]
PolicyViolationKind = Literal["empty", "email", "phone", "url"]


class Message(BaseModel):
    """A direct message row. Only ``read`` ever changes after insert."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    content: str
    created_at: datetime
    read: bool = False
    application_id: str | None = None

    def counterpart_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    full_name: str | None = None
    avatar_url: str | None = None
    is_private: bool = False
    accept_dm: bool = False


class Application(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    status: str
    student_id: str | None = None
    employer_id: str | None = None


class Conversation(BaseModel):
    counterpart_id: str
    counterpart: Profile | None = None
    last_message: Message
    unread_count: NonNegativeInt = 0
    application_id: str | None = None


class MessageCreateRequest(BaseModel):
    content: str = Field(max_length=4000)
    application_id: str | None = None


class PolicyViolationOut(BaseModel):
    kind: PolicyViolationKind
    reason: str


class ConversationMessagesOut(BaseModel):
    counterpart_id: str
    application_id: str | None = None
    messages: list[Message] = Field(default_factory=list)


class RecentMessagesOut(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    unread_count: NonNegativeInt = 0
