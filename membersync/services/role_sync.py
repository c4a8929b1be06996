"""
Retrying role-sync adapter.

Best-effort wrapper around a single role mutation on the external
group-membership system. Tier state is authoritative; this adapter never
rolls it back. Failed syncs are recorded and left for the sweep or an
explicit reconciliation to correct.

Retry policy:
- RoleRateLimitError: retried, honouring retry_after when larger than backoff
- RoleTransientError (5xx, timeout, connection): retried
- RoleValidationError and any other RoleClientError: not retried
- Anything else the client raises: recorded as a failure, not retried
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from membersync.database.session import Database
from membersync.errors import ErrorKind
from membersync.integrations.discord.exceptions import (
    RoleClientError,
    RoleRateLimitError,
    RoleTransientError,
)
from membersync.models.audit_event import (
    AuditCategory,
    AuditOutcome,
    RoleChangeAttempt,
)
from membersync.services.audit_trail import AuditTrail
from membersync.services.tier_state_machine import RoleAction, RoleIntent

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0

_AUDIT_CATEGORIES = {
    RoleAction.GRANT: AuditCategory.ROLE_GRANT,
    RoleAction.REVOKE: AuditCategory.ROLE_REVOKE,
}


class RoleClient(Protocol):
    """Contract of the role/group-membership client."""

    def grant(self, member_external_id: str, role_id: str) -> None: ...

    def revoke(self, member_external_id: str, role_id: str) -> None: ...

    def list_roles(self, member_external_id: str) -> List[str]: ...


@dataclass
class RoleSyncResult:
    """Final outcome of one role mutation after retries."""
    member_id: Optional[str]
    role_id: str
    action: RoleAction
    success: bool
    attempts: int
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None


class RoleSyncAdapter:
    """
    Applies role intents with bounded exponential backoff.

    Holds no per-member state, so concurrent calls for different members are
    safe. Calls for the same member and role are expected to be sequential.
    """

    def __init__(
        self,
        database: Database,
        role_client: RoleClient,
        audit: AuditTrail,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the adapter.

        Args:
            database: Shared database handle
            role_client: Role/group-membership client
            audit: Audit trail recorder
            max_attempts: Total attempts per call (default: 3)
            base_delay_seconds: First backoff delay (default: 1s)
            max_delay_seconds: Backoff cap (default: 30s)
            sleep: Injected sleep, replaced in tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.database = database
        self.role_client = role_client
        self.audit = audit
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay_seconds * (2 ** attempt)
        return min(delay, self.max_delay_seconds)

    def _call(self, action: RoleAction, external_member_id: str, role_id: str) -> None:
        if action == RoleAction.GRANT:
            self.role_client.grant(external_member_id, role_id)
        else:
            self.role_client.revoke(external_member_id, role_id)

    def apply(
        self,
        member_id: Optional[str],
        external_member_id: str,
        role_id: str,
        action: RoleAction,
    ) -> RoleSyncResult:
        """
        Apply one role mutation with retries.

        Never raises for external failures; the outcome is returned and
        recorded as one RoleChangeAttempt plus one AuditEvent.
        """
        action = RoleAction(action)
        last_error: Optional[Exception] = None
        error_kind: Optional[ErrorKind] = None
        attempt = 0

        while attempt < self.max_attempts:
            try:
                self._call(action, external_member_id, role_id)
                result = RoleSyncResult(
                    member_id=member_id,
                    role_id=role_id,
                    action=action,
                    success=True,
                    attempts=attempt + 1,
                )
                self._record(result, external_member_id)
                return result

            except (RoleRateLimitError, RoleTransientError) as e:
                last_error = e
                error_kind = ErrorKind.TRANSIENT_EXTERNAL
                logger.warning(
                    "Role sync attempt failed",
                    extra={
                        "member_id": member_id,
                        "role_id": role_id,
                        "action": action.value,
                        "attempt": attempt + 1,
                        "max_attempts": self.max_attempts,
                        "error": str(e),
                    },
                )

                if attempt + 1 < self.max_attempts:
                    delay = self._calculate_backoff_delay(attempt)

                    # Handle rate limiting with retry-after hint
                    if isinstance(e, RoleRateLimitError) and e.retry_after:
                        delay = max(delay, float(e.retry_after))

                    logger.info(
                        "Retrying role sync after delay",
                        extra={
                            "member_id": member_id,
                            "delay_seconds": delay,
                            "next_attempt": attempt + 2,
                        },
                    )
                    self._sleep(delay)

                attempt += 1

            except RoleClientError as e:
                last_error = e
                error_kind = ErrorKind.VALIDATION
                attempt += 1
                logger.warning(
                    "Role sync rejected, not retrying",
                    extra={
                        "member_id": member_id,
                        "role_id": role_id,
                        "action": action.value,
                        "status_code": e.status_code,
                        "error": str(e),
                    },
                )
                break

            except Exception as e:
                last_error = e
                error_kind = ErrorKind.UNEXPECTED
                attempt += 1
                logger.error(
                    "Role client raised unexpected error, not retrying",
                    extra={
                        "member_id": member_id,
                        "role_id": role_id,
                        "action": action.value,
                    },
                    exc_info=True,
                )
                break

        logger.error(
            "ROLE_SYNC_FAILURE_ALERT: Role sync failed",
            extra={
                "member_id": member_id,
                "external_member_id": external_member_id,
                "role_id": role_id,
                "action": action.value,
                "total_attempts": attempt,
                "last_error": str(last_error),
            },
        )

        result = RoleSyncResult(
            member_id=member_id,
            role_id=role_id,
            action=action,
            success=False,
            attempts=attempt,
            error_kind=error_kind,
            error_detail=str(last_error),
        )
        self._record(result, external_member_id)
        return result

    def apply_intents(
        self,
        member_id: Optional[str],
        external_member_id: str,
        intents: List[RoleIntent],
    ) -> List[RoleSyncResult]:
        """Apply intents in order; one failure does not skip the rest."""
        return [
            self.apply(member_id, external_member_id, intent.role_id, intent.action)
            for intent in intents
        ]

    def _record(self, result: RoleSyncResult, external_member_id: str) -> None:
        """Write the RoleChangeAttempt and its AuditEvent in one transaction."""
        outcome = AuditOutcome.SUCCESS if result.success else AuditOutcome.FAILURE
        try:
            with self.database.session_scope() as session:
                session.add(RoleChangeAttempt(
                    member_id=result.member_id,
                    external_member_id=external_member_id,
                    role_id=result.role_id,
                    action=result.action.value,
                    outcome="success" if result.success else "failed",
                    attempt_count=result.attempts,
                    error_detail=result.error_detail,
                ))
                self.audit.record(
                    session,
                    _AUDIT_CATEGORIES[result.action],
                    member_id=result.member_id,
                    payload={
                        "role_id": result.role_id,
                        "external_member_id": external_member_id,
                        "attempts": result.attempts,
                        "error_kind": result.error_kind.value if result.error_kind else None,
                    },
                    outcome=outcome,
                    error_detail=result.error_detail,
                )
        except SQLAlchemyError:
            logger.error(
                "Failed to record role change attempt",
                extra={
                    "member_id": result.member_id,
                    "role_id": result.role_id,
                    "action": result.action.value,
                    "success": result.success,
                },
                exc_info=True,
            )
