"""
Error taxonomy shared by the reconciliation engine.

Expected failures travel as typed results carrying an ErrorKind so callers can
tell retry-worthy conditions from fatal ones without inspecting messages.
Only InvariantViolation is raised through the core: it signals a logic bug.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MembersyncError(Exception):
    """Base exception for membersync errors."""
    pass


class InvariantViolation(MembersyncError):
    """
    Persisted state broke a tier invariant (e.g. grace without grace_ends_at).

    Never recoverable at runtime; never coerced into a valid state.
    """

    def __init__(self, message: str, member_id: Optional[str] = None):
        super().__init__(message)
        self.member_id = member_id


class ErrorKind(str, Enum):
    """Classified failure kinds."""
    UNKNOWN_MEMBER = "unknown_member"
    PERSISTENCE = "persistence"
    INVALID_PAYLOAD = "invalid_payload"
    BILLING_UNAVAILABLE = "billing_unavailable"
    TRANSIENT_EXTERNAL = "transient_external"
    VALIDATION = "validation"
    UNEXPECTED = "unexpected"

    @property
    def retryable(self) -> bool:
        return self in (
            ErrorKind.UNKNOWN_MEMBER,
            ErrorKind.PERSISTENCE,
            ErrorKind.BILLING_UNAVAILABLE,
            ErrorKind.TRANSIENT_EXTERNAL,
        )


@dataclass
class DispatchError:
    """Why a dispatch failed."""
    kind: ErrorKind
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, **self.context}
