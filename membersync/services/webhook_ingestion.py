"""
Webhook ingestion gate.

Guarantees at-most-once application of any external event id:
- A delivery whose id is already in the idempotency ledger is acknowledged
  without re-applying anything.
- Otherwise the event is dispatched; the ledger entry and the single
  webhook.applied audit row are written in the same transaction as the
  tier change, and only when dispatch succeeds.
- A failed dispatch leaves no ledger entry, so the provider's redelivery is
  processed again.

Signature verification happens before this gate (see api/routes).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from membersync.database.session import Database
from membersync.errors import DispatchError
from membersync.models.audit_event import AuditCategory
from membersync.services.audit_trail import AuditTrail
from membersync.services.event_dispatcher import EventDispatcher
from membersync.services.idempotency_ledger import IdempotencyLedger

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """
    Outcome of one webhook delivery.

    acknowledged tells the HTTP boundary whether to answer 2xx; applied is
    True only for the delivery that actually changed state.
    """
    event_id: str
    applied: bool
    acknowledged: bool
    error: Optional[DispatchError] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "applied": self.applied,
            "acknowledged": self.acknowledged,
            "error": self.error.to_dict() if self.error else None,
        }


class WebhookIngestionGate:
    """Deduplicating front door for verified billing events."""

    def __init__(
        self,
        database: Database,
        ledger: IdempotencyLedger,
        dispatcher: EventDispatcher,
        audit: AuditTrail,
    ):
        self.database = database
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.audit = audit

    def ingest(
        self,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> IngestResult:
        """
        Apply a verified event at most once.

        Args:
            event_id: Billing provider event id
            event_type: Billing provider event type
            payload: Parsed event payload

        Returns:
            IngestResult

        Raises:
            InvariantViolation: Propagated from the dispatcher (fatal)
        """
        if not event_id:
            raise ValueError("event_id is required")

        if self.ledger.is_processed(event_id):
            return self._duplicate(event_id, event_type)

        def _finalize(session: Session, member_id: Optional[str]) -> bool:
            if not self.ledger.mark_processed(session, event_id, event_type, payload):
                return False
            self.audit.record(
                session,
                AuditCategory.WEBHOOK_APPLIED,
                member_id=member_id,
                external_event_id=event_id,
                payload={"event_type": event_type, "applied": True},
            )
            return True

        result = self.dispatcher.dispatch(
            event_type,
            payload,
            event_id=event_id,
            before_commit=_finalize,
        )

        if result.duplicate:
            return self._duplicate(event_id, event_type)

        if not result.ok:
            # Failure audit row is written by the dispatcher
            logger.warning(
                "Webhook not applied; leaving unacknowledged for redelivery",
                extra={
                    "event_id": event_id,
                    "event_type": event_type,
                    "error_kind": result.error.kind.value if result.error else None,
                },
            )
            return IngestResult(
                event_id=event_id,
                applied=False,
                acknowledged=False,
                error=result.error,
            )

        logger.info(
            "Webhook applied",
            extra={
                "event_id": event_id,
                "event_type": event_type,
                "member_id": result.member_id,
                "tier": result.tier,
                "role_sync_failed": result.role_sync_failed,
            },
        )
        return IngestResult(event_id=event_id, applied=True, acknowledged=True)

    def _duplicate(self, event_id: str, event_type: str) -> IngestResult:
        logger.info(
            "Webhook already processed",
            extra={"event_id": event_id, "event_type": event_type},
        )
        self.audit.record_detached(
            AuditCategory.WEBHOOK_DUPLICATE,
            external_event_id=event_id,
            payload={"event_type": event_type, "applied": False},
        )
        return IngestResult(event_id=event_id, applied=False, acknowledged=True)
