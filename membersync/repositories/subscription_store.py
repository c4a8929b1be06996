"""
Subscription record store: persisted tier/timestamps per member.

Single source of truth for what the system believes is true. All writes go
through upsert-by-unique-key (external subscription id, member id).

Concurrency:
- Members are loaded with SELECT ... FOR UPDATE (row lock on PostgreSQL).
- Member.version is a compare-and-set column; a writer that lost a race
  gets StaleDataError on flush instead of overwriting the winner.
"""

import logging
import math
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from membersync.database.session import Database
from membersync.errors import InvariantViolation
from membersync.integrations.stripe.models import SubscriptionData
from membersync.models.grace_period import GracePeriodEntry
from membersync.models.member import Member, Tier
from membersync.models.subscription import SubscriptionRecord, SubscriptionStatus
from membersync.services.tier_state_machine import TransitionResult

logger = logging.getLogger(__name__)


def check_invariants(member: Member) -> None:
    """
    Verify tier invariants on a member.

    Raises:
        InvariantViolation: On any tier/timestamp mismatch (fatal)
    """
    problem = None
    if member.tier not in Tier.ALL:
        problem = f"unknown tier {member.tier!r}"
    elif member.tier == Tier.GRACE and member.grace_ends_at is None:
        problem = "tier=grace with null grace_ends_at"
    elif member.tier != Tier.GRACE and member.grace_ends_at is not None:
        problem = f"tier={member.tier} with non-null grace_ends_at"
    elif member.tier == Tier.PAID and member.subscription_ends_at is None:
        problem = "tier=paid with null subscription_ends_at"

    if problem:
        logger.critical(
            "INVARIANT_VIOLATION: member tier state is inconsistent",
            extra={"member_id": member.id, "problem": problem},
        )
        raise InvariantViolation(problem, member_id=member.id)


class SubscriptionStore:
    """Data access for members, subscription records and grace entries."""

    def __init__(self, database: Database):
        self.database = database

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def get_member(
        self,
        session: Session,
        member_id: str,
        for_update: bool = False,
    ) -> Optional[Member]:
        query = session.query(Member).filter(Member.id == member_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_member_for_update(self, session: Session, member_id: str) -> Optional[Member]:
        return self.get_member(session, member_id, for_update=True)

    def get_member_by_customer(
        self,
        session: Session,
        billing_customer_id: str,
        for_update: bool = True,
    ) -> Optional[Member]:
        query = session.query(Member).filter(
            Member.billing_customer_id == billing_customer_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_member_by_external_id(
        self,
        session: Session,
        external_member_id: str,
    ) -> Optional[Member]:
        return session.query(Member).filter(
            Member.external_member_id == external_member_id
        ).first()

    def link_member(
        self,
        external_member_id: str,
        billing_customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Member:
        """
        Create a member on first identity linkage, or link missing fields.

        Called by the identity flow (out of scope here) once the member's
        external id is known. Never changes tier.
        """
        with self.database.session_scope() as session:
            member = self.get_member_by_external_id(session, external_member_id)
            if member is None:
                member = Member(
                    external_member_id=external_member_id,
                    billing_customer_id=billing_customer_id,
                    email=email,
                    tier=Tier.FREE,
                )
                session.add(member)
                logger.info(
                    "Member created",
                    extra={"external_member_id": external_member_id},
                )
            else:
                if billing_customer_id and not member.billing_customer_id:
                    member.billing_customer_id = billing_customer_id
                if email and not member.email:
                    member.email = email
            session.flush()
            return member

    def link_billing_customer(
        self,
        session: Session,
        member: Member,
        billing_customer_id: str,
    ) -> None:
        """Attach a billing customer id to a member that has none yet."""
        if member.billing_customer_id == billing_customer_id:
            return
        if member.billing_customer_id:
            logger.warning(
                "Member already linked to a different billing customer",
                extra={
                    "member_id": member.id,
                    "existing_customer_id": member.billing_customer_id,
                    "new_customer_id": billing_customer_id,
                },
            )
            return
        member.billing_customer_id = billing_customer_id
        logger.info(
            "Billing customer linked",
            extra={"member_id": member.id, "billing_customer_id": billing_customer_id},
        )

    # ------------------------------------------------------------------
    # Subscription records
    # ------------------------------------------------------------------

    def get_subscription(
        self,
        session: Session,
        external_subscription_id: str,
    ) -> Optional[SubscriptionRecord]:
        return session.query(SubscriptionRecord).filter(
            SubscriptionRecord.external_subscription_id == external_subscription_id
        ).first()

    def upsert_subscription(
        self,
        session: Session,
        member: Member,
        data: SubscriptionData,
        status_override: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Insert or update a subscription record keyed by external id.

        A canceled record is terminal: later snapshots update its fields but
        never move its status back.

        Raises:
            ValueError: If the status is outside the provider vocabulary
        """
        status = status_override or data.status
        if status not in SubscriptionStatus.ALL:
            raise ValueError(f"Unknown subscription status: {status!r}")

        record = self.get_subscription(session, data.external_subscription_id)
        if record is None:
            record = SubscriptionRecord(
                member_id=member.id,
                external_subscription_id=data.external_subscription_id,
            )
            session.add(record)
            action = "created"
        else:
            action = "updated"

        if record.status == SubscriptionStatus.CANCELED and status != SubscriptionStatus.CANCELED:
            logger.warning(
                "Ignoring status change on canceled subscription",
                extra={
                    "member_id": member.id,
                    "external_subscription_id": data.external_subscription_id,
                    "incoming_status": status,
                },
            )
            status = SubscriptionStatus.CANCELED

        record.price_id = data.price_id or record.price_id
        record.status = status
        record.current_period_start = data.current_period_start
        record.current_period_end = data.current_period_end
        record.trial_start = data.trial_start
        record.trial_end = data.trial_end
        record.cancel_at = data.cancel_at
        record.cancel_at_period_end = data.cancel_at_period_end
        record.canceled_at = data.canceled_at
        session.flush()

        logger.info(
            f"Subscription record {action}",
            extra={
                "member_id": member.id,
                "external_subscription_id": data.external_subscription_id,
                "status": status,
            },
        )
        return record

    def set_subscription_status(
        self,
        session: Session,
        external_subscription_id: str,
        status: str,
    ) -> Optional[SubscriptionRecord]:
        """Update only the status of an existing record. None if not mirrored yet."""
        if status not in SubscriptionStatus.ALL:
            raise ValueError(f"Unknown subscription status: {status!r}")
        record = self.get_subscription(session, external_subscription_id)
        if record is None:
            return None
        if record.status != SubscriptionStatus.CANCELED:
            record.status = status
            session.flush()
        return record

    def has_other_entitled_subscription(
        self,
        session: Session,
        member_id: str,
        external_subscription_id: str,
    ) -> bool:
        """True if the member holds an active/trialing subscription besides this one."""
        existing = session.query(SubscriptionRecord.id).filter(
            SubscriptionRecord.member_id == member_id,
            SubscriptionRecord.external_subscription_id != external_subscription_id,
            SubscriptionRecord.status.in_(SubscriptionStatus.ENTITLED),
        ).first()
        return existing is not None

    # ------------------------------------------------------------------
    # Tier transitions
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        session: Session,
        member: Member,
        result: TransitionResult,
        now: datetime,
        subscription_ends_at: Optional[datetime] = None,
    ) -> None:
        """
        Persist a state machine result onto a member.

        Args:
            session: Active session holding the member row
            member: Member loaded for update
            result: Output of tier_state_machine.transition
            now: Reference time used for the transition
            subscription_ends_at: New paid-period end (activate/renew)

        Raises:
            InvariantViolation: If the resulting state breaks an invariant
        """
        check_invariants(member)

        if result.next_tier == Tier.PAID:
            member.tier = Tier.PAID
            if subscription_ends_at is not None:
                member.subscription_ends_at = subscription_ends_at
            member.grace_ends_at = None
            if result.clear_grace:
                self._delete_grace_entry(session, member)

        elif result.started_grace:
            member.tier = Tier.GRACE
            member.grace_ends_at = result.grace_ends_at
            self._upsert_grace_entry(session, member, now, result.grace_ends_at)

        elif result.changed and result.next_tier == Tier.FREE:
            member.tier = Tier.FREE
            member.grace_ends_at = None
            self._delete_grace_entry(session, member)

        check_invariants(member)
        session.flush()

        if result.changed:
            logger.info(
                "Member tier transitioned",
                extra={
                    "member_id": member.id,
                    "from_tier": result.previous_tier,
                    "to_tier": result.next_tier,
                    "intent": result.intent.value,
                },
            )

    def _upsert_grace_entry(
        self,
        session: Session,
        member: Member,
        started_at: datetime,
        ends_at: datetime,
    ) -> GracePeriodEntry:
        entry = session.query(GracePeriodEntry).filter(
            GracePeriodEntry.member_id == member.id
        ).first()
        if entry is None:
            entry = GracePeriodEntry(member_id=member.id, reminder_enabled=True)
            session.add(entry)
        entry.grace_started_at = started_at
        entry.grace_ends_at = ends_at
        return entry

    def _delete_grace_entry(self, session: Session, member: Member) -> None:
        session.query(GracePeriodEntry).filter(
            GracePeriodEntry.member_id == member.id
        ).delete(synchronize_session="fetch")

    def get_grace_entry(self, session: Session, member_id: str) -> Optional[GracePeriodEntry]:
        return session.query(GracePeriodEntry).filter(
            GracePeriodEntry.member_id == member_id
        ).first()

    # ------------------------------------------------------------------
    # Sweep selections
    # ------------------------------------------------------------------

    def members_due_for_grace(
        self,
        session: Session,
        now: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[str]:
        """Ids of paid members whose subscription ended at or before now."""
        query = session.query(Member.id).filter(
            Member.tier == Tier.PAID,
            Member.subscription_ends_at <= now,
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.filter(Member.id.notin_(exclude_ids))
        rows = query.order_by(Member.subscription_ends_at.asc()).limit(limit).all()
        return [row.id for row in rows]

    def members_due_for_expiry(
        self,
        session: Session,
        now: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[str]:
        """Ids of grace members whose grace ended at or before now."""
        query = session.query(Member.id).filter(
            Member.tier == Tier.GRACE,
            Member.grace_ends_at <= now,
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.filter(Member.id.notin_(exclude_ids))
        rows = query.order_by(Member.grace_ends_at.asc()).limit(limit).all()
        return [row.id for row in rows]

    # ------------------------------------------------------------------
    # Grace reminders
    # ------------------------------------------------------------------

    def set_reminder_preference(self, member_id: str, enabled: bool) -> bool:
        """Toggle grace reminders. False if the member is not in grace."""
        with self.database.session_scope() as session:
            entry = self.get_grace_entry(session, member_id)
            if entry is None:
                return False
            entry.reminder_enabled = enabled
            logger.info(
                "Updated grace reminder preference",
                extra={"member_id": member_id, "enabled": enabled},
            )
            return True

    def grace_status(self, member_id: str, now: datetime) -> Optional[dict]:
        """Grace window summary for a member, or None if not in grace."""
        with self.database.session_scope() as session:
            entry = self.get_grace_entry(session, member_id)
            if entry is None:
                return None
            seconds_left = (entry.grace_ends_at - now).total_seconds()
            days_remaining = max(0, math.ceil(seconds_left / 86400))
            return {
                "grace_started_at": entry.grace_started_at,
                "grace_ends_at": entry.grace_ends_at,
                "days_remaining": days_remaining,
                "reminder_enabled": entry.reminder_enabled,
                "is_expired": seconds_left <= 0,
            }
