from __future__ import annotations

from typing import TypeAlias

from jobchat.core.content_policy import PolicyViolation

PERMISSION_DENIED_MESSAGE = (
    "You cannot message this user: their profile is private and closed to direct messages, "
    "or the application is not accepted."
)


class InboxError(Exception):
    """Base error for conversation and notification views."""


class PolicyViolationError(InboxError):
    """Raised when message content breaks the contact-information policy."""

    def __init__(self, violation: PolicyViolation) -> None:
        super().__init__(violation.reason)
        self.violation = violation


class PermissionDeniedError(InboxError):
    """Raised when the sender is not allowed to message the receiver."""

    def __init__(self, message: str = PERMISSION_DENIED_MESSAGE) -> None:
        super().__init__(message)


class StoreError(InboxError):
    """Raised when the backing store fails or times out, or rejects a request (``retryable=False``)."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class SubscriptionError(InboxError):
    """Raised when a push subscription cannot be established."""


SendError: TypeAlias = PolicyViolationError | PermissionDeniedError | StoreError
