"""
Idempotency ledger for billing webhooks.

Records which external event ids have been fully applied. Entries are
write-once: writing an id that is already present is a no-op success.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from membersync.database.session import Database
from membersync.models.base import utcnow
from membersync.models.webhook_event import ProcessedWebhook

logger = logging.getLogger(__name__)


def payload_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON payload, for debugging duplicates."""
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_str.encode()).hexdigest()


class IdempotencyLedger:
    """Lookup and write-once insert of processed webhook event ids."""

    def __init__(self, database: Database):
        self.database = database

    def is_processed(self, event_id: str, session: Optional[Session] = None) -> bool:
        """
        Check if a webhook event has already been applied.

        Args:
            event_id: Billing provider event id
            session: Optional session to reuse

        Returns:
            True if already applied, False otherwise
        """
        if session is not None:
            return self._exists(session, event_id)
        with self.database.session_scope() as own_session:
            return self._exists(own_session, event_id)

    @staticmethod
    def _exists(session: Session, event_id: str) -> bool:
        existing = session.query(ProcessedWebhook.id).filter(
            ProcessedWebhook.external_event_id == event_id
        ).first()
        return existing is not None

    def mark_processed(
        self,
        session: Session,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> bool:
        """
        Record an applied event inside the caller's transaction.

        Uses a SAVEPOINT so a unique-constraint collision (another worker
        recorded the same id first) leaves the outer transaction usable.

        Returns:
            True if this call wrote the entry, False if it already existed
        """
        entry = ProcessedWebhook(
            external_event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash(payload),
            processed_at=utcnow(),
        )
        try:
            with session.begin_nested():
                session.add(entry)
                session.flush()
        except IntegrityError:
            logger.info(
                "Idempotency entry already present",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return False
        return True
