"""
Reminder notifier collaborator.

The core only triggers "send a reminder"; message content and delivery
belong to the receiving bot. Notifications are best effort: a failure is
logged and reported as False, never raised.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import httpx

from membersync.models.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class ReminderNotifier(Protocol):
    """Hooks fired after tier changes that the member should hear about."""

    def grace_started(
        self,
        member_id: str,
        external_member_id: str,
        grace_ends_at: datetime,
    ) -> bool: ...

    def trial_ending(
        self,
        member_id: str,
        external_member_id: str,
        trial_end: Optional[datetime],
    ) -> bool: ...


class RoleBotNotifier:
    """Posts reminder events as JSON to the role bot's webhook endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not url:
            raise ValueError("Role bot webhook URL is required (ROLEBOT_WEBHOOK_URL)")
        self.url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _send(self, event_type: str, data: Dict[str, Any]) -> bool:
        payload = {
            "type": event_type,
            "data": data,
            "timestamp": utcnow().isoformat(),
        }
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to send reminder to role bot",
                extra={
                    "event_type": event_type,
                    "member_id": data.get("member_id"),
                    "error": str(e),
                },
            )
            return False

        logger.info(
            "Reminder sent to role bot",
            extra={"event_type": event_type, "member_id": data.get("member_id")},
        )
        return True

    def grace_started(
        self,
        member_id: str,
        external_member_id: str,
        grace_ends_at: datetime,
    ) -> bool:
        return self._send(
            "grace_period.started",
            {
                "member_id": member_id,
                "external_member_id": external_member_id,
                "grace_ends_at": grace_ends_at.isoformat(),
            },
        )

    def trial_ending(
        self,
        member_id: str,
        external_member_id: str,
        trial_end: Optional[datetime],
    ) -> bool:
        return self._send(
            "trial.ending",
            {
                "member_id": member_id,
                "external_member_id": external_member_id,
                "trial_end": trial_end.isoformat() if trial_end else None,
            },
        )
