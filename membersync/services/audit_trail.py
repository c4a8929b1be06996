"""
Audit trail recorder: append-only record of every state-changing attempt.

Two write modes:
- record(): joins the caller's session, so the audit row commits or rolls
  back together with the state change it describes.
- record_detached(): own short transaction, for failure outcomes whose
  enclosing transaction was rolled back. Audit failures never crash the
  caller.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from membersync.database.session import Database
from membersync.models.audit_event import AuditEvent, AuditOutcome

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes and reads AuditEvent rows. Never updates them."""

    def __init__(self, database: Database):
        self.database = database

    def record(
        self,
        session: Session,
        category: str,
        *,
        member_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        outcome: str = AuditOutcome.SUCCESS,
        external_event_id: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            member_id=member_id,
            category=category,
            external_event_id=external_event_id,
            payload=payload or {},
            outcome=outcome,
            error_detail=error_detail,
        )
        session.add(event)
        return event

    def record_detached(
        self,
        category: str,
        *,
        member_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        outcome: str = AuditOutcome.SUCCESS,
        external_event_id: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        """Record in a separate transaction. Returns False if the write failed."""
        try:
            with self.database.session_scope() as session:
                self.record(
                    session,
                    category,
                    member_id=member_id,
                    payload=payload,
                    outcome=outcome,
                    external_event_id=external_event_id,
                    error_detail=error_detail,
                )
            return True
        except SQLAlchemyError:
            logger.warning(
                "audit_trail.record_detached_failed",
                extra={
                    "category": category,
                    "member_id": member_id,
                    "external_event_id": external_event_id,
                },
                exc_info=True,
            )
            return False

    def events_for(self, external_event_id: str) -> List[AuditEvent]:
        """All audit rows tied to one billing provider event."""
        with self.database.session_scope() as session:
            return (
                session.query(AuditEvent)
                .filter(AuditEvent.external_event_id == external_event_id)
                .order_by(AuditEvent.created_at.asc())
                .all()
            )

    def events_for_member(
        self,
        member_id: str,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Most recent audit rows for a member, newest first."""
        with self.database.session_scope() as session:
            query = session.query(AuditEvent).filter(AuditEvent.member_id == member_id)
            if category:
                query = query.filter(AuditEvent.category == category)
            return (
                query.order_by(AuditEvent.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
