"""Contact-information filter applied to direct messages before they are stored.

Marketplace users must keep the conversation on the platform, so message bodies
may not carry email addresses, phone numbers, or links. Patterns are checked
in a fixed order (email, phone, url) and the first hit is reported.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from jobchat.schemas.messages import PolicyViolationKind

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Four groups of two or more digits keeps short numbers ("3 years", "2024") legal.
_PHONE_RE = re.compile(r"(?:\+\d{1,3}[-. ]?)?\d{2,}[-. ]?\d{2,}[-. ]?\d{2,}[-. ]?\d{2,}")
_URL_RE = re.compile(r"(https?://\S+)|(www\.\S+)")

_RULES: tuple[tuple[PolicyViolationKind, re.Pattern[str], str], ...] = (
    ("email", _EMAIL_RE, "Email addresses are not allowed in messages."),
    ("phone", _PHONE_RE, "Phone numbers are not allowed in messages."),
    ("url", _URL_RE, "Links are not allowed in messages."),
)

EMPTY_REASON = "Message is empty."


@dataclass(frozen=True, slots=True)
class PolicyViolation:
    kind: PolicyViolationKind
    reason: str


def validate(content: str) -> PolicyViolation | None:
    """Return the first policy violation found in ``content``, or None if it may be sent."""

    if not content.strip():
        return PolicyViolation(kind="empty", reason=EMPTY_REASON)

    for kind, pattern, reason in _RULES:
        if pattern.search(content):
            return PolicyViolation(kind=kind, reason=reason)
    return None
