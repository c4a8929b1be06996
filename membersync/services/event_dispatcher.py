"""
Event dispatcher: maps verified billing events to tier intents.

Two explicit phases per event:

1. Authoritative (one transaction): resolve the member, mirror the
   subscription record, run the tier state machine, persist, audit. Any
   failure rolls the whole phase back and is returned as a DispatchError.
2. Best effort (after commit): issue role intents through the role-sync
   adapter and fire reminder hooks. Failures here are recorded but never
   fail the dispatch; tier state is authoritative.

Event types handled:
- checkout.session.completed            -> activate
- customer.subscription.created         -> activate (active/trialing only)
- customer.subscription.updated         -> renew or mark_past_due on a status change
- customer.subscription.deleted         -> cancel_to_grace
- invoice.payment_succeeded             -> renew
- invoice.payment_failed                -> mark_past_due
- customer.subscription.trial_will_end  -> trial_ending
Anything else is audited as ignored and treated as success.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from membersync.config.settings import ReconcilerConfig
from membersync.database.session import Database
from membersync.errors import DispatchError, ErrorKind
from membersync.integrations.stripe.exceptions import BillingClientError
from membersync.integrations.stripe.models import SubscriptionData, from_epoch
from membersync.models.audit_event import AuditCategory, AuditOutcome
from membersync.models.base import utcnow
from membersync.models.member import Member
from membersync.models.subscription import SubscriptionStatus
from membersync.repositories.subscription_store import SubscriptionStore
from membersync.services.audit_trail import AuditTrail
from membersync.services.reminders import ReminderNotifier
from membersync.services.role_sync import RoleSyncAdapter, RoleSyncResult
from membersync.services.tier_state_machine import Intent, RoleIntent, transition

logger = logging.getLogger(__name__)


class EventType:
    """Billing provider event types with a mapped intent."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"


EVENT_INTENTS = {
    EventType.CHECKOUT_COMPLETED: Intent.ACTIVATE,
    EventType.SUBSCRIPTION_CREATED: Intent.ACTIVATE,
    EventType.SUBSCRIPTION_UPDATED: Intent.RENEW,
    EventType.SUBSCRIPTION_DELETED: Intent.CANCEL_TO_GRACE,
    EventType.INVOICE_PAID: Intent.RENEW,
    EventType.INVOICE_FAILED: Intent.MARK_PAST_DUE,
    EventType.TRIAL_WILL_END: Intent.TRIAL_ENDING,
}

# Before-commit hook: runs inside the phase 1 transaction.
# Returning False rolls phase 1 back (event was already applied elsewhere).
CommitHook = Callable[[Session, Optional[str]], bool]


def resolve_intent(
    event_type: str,
    status: Optional[str] = None,
    previous_attributes: Optional[Dict[str, Any]] = None,
) -> Optional[Intent]:
    """
    Refine the mapped intent with the subscription status.

    Subscription updates only carry an intent when previous_attributes
    shows the status itself changed; other updates (plan, cancel flag,
    metadata) just mirror the record.

    Returns None for record-only events (mirror the subscription, no tier
    change) and for unknown event types.
    """
    intent = EVENT_INTENTS.get(event_type)
    if intent is None:
        return None

    if event_type == EventType.SUBSCRIPTION_CREATED:
        return intent if status in SubscriptionStatus.ENTITLED else None

    if event_type == EventType.SUBSCRIPTION_UPDATED:
        previous_status = (previous_attributes or {}).get("status")
        if previous_status is None or previous_status == status:
            return None
        if status in SubscriptionStatus.ENTITLED:
            return Intent.RENEW
        if status in SubscriptionStatus.DUNNING:
            return Intent.MARK_PAST_DUE
        return None

    if intent in (Intent.ACTIVATE, Intent.RENEW) and status is not None:
        return intent if status in SubscriptionStatus.ENTITLED else None

    return intent


@dataclass
class DispatchResult:
    """Outcome of dispatching one event."""
    ok: bool
    event_type: str
    intent: Optional[Intent] = None
    member_id: Optional[str] = None
    previous_tier: Optional[str] = None
    tier: Optional[str] = None
    error: Optional[DispatchError] = None
    duplicate: bool = False
    role_results: List[RoleSyncResult] = field(default_factory=list)

    @property
    def role_sync_failed(self) -> bool:
        return any(not r.success for r in self.role_results)


class _DispatchFailure(Exception):
    """Internal: aborts phase 1 with a classified error."""

    def __init__(self, kind: ErrorKind, message: str, **context):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context


class _AlreadyApplied(Exception):
    """Internal: the commit hook found the event already applied."""
    pass


@dataclass
class _Phase2Work:
    """Values captured in phase 1 for use after commit."""
    member_id: str
    external_member_id: str
    role_intents: List[RoleIntent] = field(default_factory=list)
    grace_ends_at: Optional[datetime] = None
    remind_grace: bool = False
    trial_end: Optional[datetime] = None
    remind_trial: bool = False


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _event_object(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return payload


def _previous_attributes(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("previous_attributes"), dict):
        return data["previous_attributes"]
    return {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


class EventDispatcher:
    """Applies one verified billing event to the member it concerns."""

    def __init__(
        self,
        database: Database,
        store: SubscriptionStore,
        role_sync: RoleSyncAdapter,
        audit: AuditTrail,
        billing_client,
        config: ReconcilerConfig,
        notifier: Optional[ReminderNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the dispatcher.

        Args:
            database: Shared database handle
            store: Subscription record store
            role_sync: Retrying role-sync adapter
            audit: Audit trail recorder
            billing_client: Client with list_subscriptions/get_subscription
                (None disables lookups; events needing one fail retryably)
            config: Reconciler configuration (grace days, paid role id)
            notifier: Optional reminder notifier
            clock: Wall-clock source, read once per dispatch
        """
        self.database = database
        self.store = store
        self.role_sync = role_sync
        self.audit = audit
        self.billing_client = billing_client
        self.config = config
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def dispatch(
        self,
        event_type: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        before_commit: Optional[CommitHook] = None,
    ) -> DispatchResult:
        """
        Dispatch a verified event.

        Args:
            event_type: Billing provider event type
            payload: Parsed event (full event or its data.object)
            event_id: Billing provider event id, for audit correlation
            before_commit: Hook run inside the phase 1 transaction

        Returns:
            DispatchResult; ok=False carries a DispatchError

        Raises:
            InvariantViolation: If persisted state is inconsistent (fatal)
        """
        now = self.clock()
        obj = _event_object(payload)
        previous_attributes = _previous_attributes(payload)
        result = DispatchResult(ok=False, event_type=event_type)
        phase2: Optional[_Phase2Work] = None

        logger.info(
            "Dispatching billing event",
            extra={"event_id": event_id, "event_type": event_type},
        )

        try:
            with self.database.session_scope() as session:
                if event_type not in EVENT_INTENTS:
                    self.audit.record(
                        session,
                        AuditCategory.WEBHOOK_IGNORED,
                        external_event_id=event_id,
                        payload={"event_type": event_type},
                    )
                    logger.warning(
                        "Unhandled billing event type",
                        extra={"event_id": event_id, "event_type": event_type},
                    )
                else:
                    phase2 = self._apply(
                        session, event_type, obj, previous_attributes, event_id, now, result
                    )

                if before_commit is not None and not before_commit(session, result.member_id):
                    raise _AlreadyApplied()

        except _AlreadyApplied:
            logger.info(
                "Event applied concurrently, phase 1 rolled back",
                extra={"event_id": event_id, "event_type": event_type},
            )
            result.ok = True
            result.duplicate = True
            return result

        except _DispatchFailure as e:
            return self._fail(result, event_id, e.kind, e.message, e.context)

        except BillingClientError as e:
            return self._fail(
                result, event_id, ErrorKind.BILLING_UNAVAILABLE, str(e),
                {"status_code": e.status_code},
            )

        except SQLAlchemyError as e:
            logger.error(
                "Persistence error while dispatching event",
                extra={"event_id": event_id, "event_type": event_type},
                exc_info=True,
            )
            return self._fail(result, event_id, ErrorKind.PERSISTENCE, str(e), {})

        result.ok = True
        if phase2 is not None:
            self._run_phase2(phase2, result)
        return result

    def _fail(
        self,
        result: DispatchResult,
        event_id: Optional[str],
        kind: ErrorKind,
        message: str,
        context: Dict[str, Any],
    ) -> DispatchResult:
        result.ok = False
        result.error = DispatchError(kind=kind, message=message, context=context)
        logger.warning(
            "Dispatch failed",
            extra={
                "event_id": event_id,
                "event_type": result.event_type,
                "error_kind": kind.value,
                "retryable": kind.retryable,
                "error": message,
            },
        )
        self.audit.record_detached(
            AuditCategory.WEBHOOK_FAILED,
            member_id=result.member_id,
            external_event_id=event_id,
            payload={"event_type": result.event_type, **result.error.to_dict()},
            outcome=AuditOutcome.FAILURE,
            error_detail=message,
        )
        return result

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    def _apply(
        self,
        session: Session,
        event_type: str,
        obj: Dict[str, Any],
        previous_attributes: Dict[str, Any],
        event_id: Optional[str],
        now: datetime,
        result: DispatchResult,
    ) -> Optional[_Phase2Work]:
        customer_id = _id_of(obj.get("customer"))

        if event_type == EventType.CHECKOUT_COMPLETED:
            member = self._resolve_checkout_member(session, obj, customer_id)
        else:
            member = self._resolve_member(session, customer_id)
        result.member_id = member.id
        result.previous_tier = member.tier
        result.tier = member.tier

        if event_type == EventType.TRIAL_WILL_END:
            return self._apply_trial_ending(session, member, obj, event_id, result)

        if event_type == EventType.INVOICE_FAILED:
            return self._apply_payment_failed(session, member, obj, event_id, result)

        data = self._subscription_for(event_type, obj, customer_id)
        if data is None:
            # Invoice not tied to a subscription: nothing to reconcile
            self.audit.record(
                session,
                AuditCategory.SUBSCRIPTION_RECORDED,
                member_id=member.id,
                external_event_id=event_id,
                payload={"event_type": event_type, "invoice_id": obj.get("id")},
            )
            return None

        if event_type == EventType.CHECKOUT_COMPLETED and customer_id:
            self.store.link_billing_customer(session, member, customer_id)

        try:
            record = self.store.upsert_subscription(session, member, data)
        except ValueError as e:
            raise _DispatchFailure(ErrorKind.INVALID_PAYLOAD, str(e))

        # A canceled record stays canceled, so judge by the stored status
        intent = resolve_intent(event_type, record.status, previous_attributes)
        result.intent = intent

        if intent == Intent.CANCEL_TO_GRACE and self.store.has_other_entitled_subscription(
            session, member.id, data.external_subscription_id
        ):
            logger.info(
                "Cancelled subscription superseded by another active one",
                extra={"member_id": member.id, "subscription_id": data.external_subscription_id},
            )
            intent = None

        if intent is None:
            self.audit.record(
                session,
                AuditCategory.SUBSCRIPTION_RECORDED,
                member_id=member.id,
                external_event_id=event_id,
                payload={
                    "event_type": event_type,
                    "subscription_id": data.external_subscription_id,
                    "status": data.status,
                },
            )
            return None

        return self._transition(session, member, intent, data, event_type, event_id, now, result)

    def _transition(
        self,
        session: Session,
        member: Member,
        intent: Intent,
        data: SubscriptionData,
        event_type: str,
        event_id: Optional[str],
        now: datetime,
        result: DispatchResult,
    ) -> _Phase2Work:
        ends_at = None
        if intent in (Intent.ACTIVATE, Intent.RENEW):
            ends_at = data.current_period_end or data.trial_end
            if ends_at is None and member.subscription_ends_at is None:
                raise _DispatchFailure(
                    ErrorKind.INVALID_PAYLOAD,
                    "Subscription has no period end",
                    subscription_id=data.external_subscription_id,
                )
            # Stale snapshots never shorten the paid period
            if ends_at is not None and member.subscription_ends_at is not None:
                ends_at = max(ends_at, member.subscription_ends_at)

        outcome = transition(
            member.tier,
            intent,
            now,
            grace_period_days=self.config.grace_period_days,
            paid_role_id=self.config.paid_role_id,
        )
        self.store.apply_transition(session, member, outcome, now, subscription_ends_at=ends_at)
        result.tier = member.tier

        self.audit.record(
            session,
            self._category_for(intent, outcome),
            member_id=member.id,
            external_event_id=event_id,
            payload={
                "event_type": event_type,
                "intent": intent.value,
                "subscription_id": data.external_subscription_id,
                "status": data.status,
                "from_tier": outcome.previous_tier,
                "to_tier": outcome.next_tier,
                "subscription_ends_at": ends_at.isoformat() if ends_at else None,
                "grace_ends_at": outcome.grace_ends_at.isoformat() if outcome.grace_ends_at else None,
            },
        )

        work = _Phase2Work(
            member_id=member.id,
            external_member_id=member.external_member_id,
            role_intents=list(outcome.role_intents),
        )
        if outcome.started_grace:
            entry = self.store.get_grace_entry(session, member.id)
            work.grace_ends_at = outcome.grace_ends_at
            work.remind_grace = bool(entry and entry.reminder_enabled)
        return work

    @staticmethod
    def _category_for(intent: Intent, outcome) -> str:
        if intent in (Intent.ACTIVATE, Intent.RENEW) and outcome.reactivated:
            return AuditCategory.SUBSCRIPTION_REACTIVATED
        if intent == Intent.ACTIVATE:
            return AuditCategory.SUBSCRIPTION_ACTIVATED
        if intent == Intent.RENEW:
            return AuditCategory.SUBSCRIPTION_RENEWED
        if intent == Intent.CANCEL_TO_GRACE and outcome.started_grace:
            return AuditCategory.GRACE_STARTED
        return AuditCategory.SUBSCRIPTION_RECORDED

    def _apply_payment_failed(
        self,
        session: Session,
        member: Member,
        invoice: Dict[str, Any],
        event_id: Optional[str],
        result: DispatchResult,
    ) -> None:
        """Dunning: mark the subscription past_due; tier and roles untouched."""
        result.intent = Intent.MARK_PAST_DUE
        subscription_id = _invoice_subscription_id(invoice)

        if subscription_id:
            record = self.store.set_subscription_status(
                session, subscription_id, SubscriptionStatus.PAST_DUE
            )
            if record is None:
                data = self._fetch_subscription(subscription_id)
                self.store.upsert_subscription(
                    session, member, data, status_override=SubscriptionStatus.PAST_DUE
                )

        self.audit.record(
            session,
            AuditCategory.SUBSCRIPTION_PAST_DUE,
            member_id=member.id,
            external_event_id=event_id,
            payload={
                "invoice_id": invoice.get("id"),
                "subscription_id": subscription_id,
                "attempt_count": invoice.get("attempt_count"),
                "next_payment_attempt": invoice.get("next_payment_attempt"),
                "tier": member.tier,
            },
        )
        return None

    def _apply_trial_ending(
        self,
        session: Session,
        member: Member,
        subscription: Dict[str, Any],
        event_id: Optional[str],
        result: DispatchResult,
    ) -> _Phase2Work:
        """Audit only; the reminder hook fires after commit."""
        result.intent = Intent.TRIAL_ENDING
        trial_end = from_epoch(subscription.get("trial_end"))
        self.audit.record(
            session,
            AuditCategory.TRIAL_ENDING,
            member_id=member.id,
            external_event_id=event_id,
            payload={
                "subscription_id": subscription.get("id"),
                "trial_end": trial_end.isoformat() if trial_end else None,
            },
        )
        return _Phase2Work(
            member_id=member.id,
            external_member_id=member.external_member_id,
            trial_end=trial_end,
            remind_trial=True,
        )

    # ------------------------------------------------------------------
    # Resolution helpers
    # ------------------------------------------------------------------

    def _resolve_member(self, session: Session, customer_id: Optional[str]) -> Member:
        if not customer_id:
            raise _DispatchFailure(ErrorKind.INVALID_PAYLOAD, "Event has no customer id")
        member = self.store.get_member_by_customer(session, customer_id)
        if member is None:
            raise _DispatchFailure(
                ErrorKind.UNKNOWN_MEMBER,
                f"No member linked to customer {customer_id}",
                customer_id=customer_id,
            )
        return member

    def _resolve_checkout_member(
        self,
        session: Session,
        checkout: Dict[str, Any],
        customer_id: Optional[str],
    ) -> Member:
        """Checkout may carry the member id in metadata before the customer is linked."""
        member_ref = (checkout.get("metadata") or {}).get("member_id")
        if member_ref:
            member = self.store.get_member(session, member_ref, for_update=True)
            if member is None:
                member = self.store.get_member_by_external_id(session, member_ref)
                if member is not None:
                    member = self.store.get_member(session, member.id, for_update=True)
            if member is not None:
                return member
            if not customer_id:
                raise _DispatchFailure(
                    ErrorKind.UNKNOWN_MEMBER,
                    f"No member {member_ref}",
                    member_ref=member_ref,
                )
        return self._resolve_member(session, customer_id)

    def _fetch_subscription(self, subscription_id: str) -> SubscriptionData:
        if self.billing_client is None:
            raise _DispatchFailure(
                ErrorKind.BILLING_UNAVAILABLE,
                "Billing client not configured",
                subscription_id=subscription_id,
            )
        return self.billing_client.get_subscription(subscription_id)

    def _subscription_for(
        self,
        event_type: str,
        obj: Dict[str, Any],
        customer_id: Optional[str],
    ) -> Optional[SubscriptionData]:
        """Authoritative subscription details for an event."""
        if event_type in (
            EventType.SUBSCRIPTION_CREATED,
            EventType.SUBSCRIPTION_UPDATED,
            EventType.SUBSCRIPTION_DELETED,
        ):
            data = SubscriptionData.from_dict(obj)
            if not data.external_subscription_id:
                raise _DispatchFailure(ErrorKind.INVALID_PAYLOAD, "Subscription object has no id")
            return data

        if event_type == EventType.INVOICE_PAID:
            subscription_id = _invoice_subscription_id(obj)
            if not subscription_id:
                return None
            return self._fetch_subscription(subscription_id)

        # checkout.session.completed
        subscription_id = _id_of(obj.get("subscription"))
        if subscription_id:
            return self._fetch_subscription(subscription_id)

        if self.billing_client is None:
            raise _DispatchFailure(ErrorKind.BILLING_UNAVAILABLE, "Billing client not configured")
        subscriptions = self.billing_client.list_subscriptions(customer_id) if customer_id else []
        if not subscriptions:
            raise _DispatchFailure(
                ErrorKind.INVALID_PAYLOAD,
                "No subscription found for checkout",
                customer_id=customer_id,
            )
        entitled = [s for s in subscriptions if s.status in SubscriptionStatus.ENTITLED]
        return (entitled or subscriptions)[0]

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    def _run_phase2(self, work: _Phase2Work, result: DispatchResult) -> None:
        if work.role_intents:
            result.role_results = self.role_sync.apply_intents(
                work.member_id, work.external_member_id, work.role_intents
            )
            if result.role_sync_failed:
                logger.warning(
                    "Role sync failed after tier commit; tier stays authoritative",
                    extra={"member_id": work.member_id, "tier": result.tier},
                )

        if self.notifier is None:
            return
        try:
            if work.remind_grace and work.grace_ends_at is not None:
                self.notifier.grace_started(work.member_id, work.external_member_id, work.grace_ends_at)
            if work.remind_trial:
                self.notifier.trial_ending(work.member_id, work.external_member_id, work.trial_end)
        except Exception:
            logger.error(
                "Reminder hook failed",
                extra={"member_id": work.member_id},
                exc_info=True,
            )
