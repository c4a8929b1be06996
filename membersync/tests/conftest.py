"""
Shared fixtures for the membersync test suite.

In-memory SQLite (StaticPool) backs every test; external collaborators are
replaced by scriptable fakes and time is pinned with a fixed clock.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from membersync.app_state import build_components
from membersync.config.settings import ReconcilerConfig
from membersync.database.session import Database
from membersync.integrations.stripe.exceptions import BillingClientError
from membersync.integrations.stripe.models import SubscriptionData
from membersync.integrations.stripe.signature import StripeSignatureVerifier
from membersync.models.grace_period import GracePeriodEntry
from membersync.models.member import Member, Tier

PAID_ROLE_ID = "role-paid"
GUILD_ID = "guild-1"
WEBHOOK_SECRET = "whsec_test_secret"
FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Fakes
# =============================================================================


class FakeRoleClient:
    """
    Role client that records calls.

    `script` is consumed one entry per call: an exception instance is raised,
    None succeeds. Once empty, `default_error` (if set) is raised, else success.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.script: List[Optional[Exception]] = []
        self.default_error: Optional[Exception] = None
        self.roles: Dict[str, set] = {}

    def _next(self):
        if self.script:
            error = self.script.pop(0)
        else:
            error = self.default_error
        if error is not None:
            raise error

    def grant(self, member_external_id: str, role_id: str) -> None:
        self.calls.append(("grant", member_external_id, role_id))
        self._next()
        self.roles.setdefault(member_external_id, set()).add(role_id)

    def revoke(self, member_external_id: str, role_id: str) -> None:
        self.calls.append(("revoke", member_external_id, role_id))
        self._next()
        self.roles.setdefault(member_external_id, set()).discard(role_id)

    def list_roles(self, member_external_id: str) -> List[str]:
        return sorted(self.roles.get(member_external_id, set()))

    def calls_for(self, action: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == action]


class FakeBillingClient:
    """Billing client backed by dicts of SubscriptionData."""

    def __init__(self):
        self.subscriptions: Dict[str, SubscriptionData] = {}
        self.error: Optional[BillingClientError] = None
        self.lookups: List[str] = []

    def add(self, data: SubscriptionData) -> SubscriptionData:
        self.subscriptions[data.external_subscription_id] = data
        return data

    def get_subscription(self, subscription_id: str) -> SubscriptionData:
        self.lookups.append(subscription_id)
        if self.error is not None:
            raise self.error
        if subscription_id not in self.subscriptions:
            raise BillingClientError(f"No such subscription: {subscription_id}", status_code=404)
        return self.subscriptions[subscription_id]

    def list_subscriptions(self, customer_id: str) -> List[SubscriptionData]:
        self.lookups.append(customer_id)
        if self.error is not None:
            raise self.error
        return [s for s in self.subscriptions.values() if s.customer_id == customer_id]


class FakeNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    def grace_started(self, member_id, external_member_id, grace_ends_at) -> bool:
        self.sent.append(("grace_started", member_id, grace_ends_at))
        return True

    def trial_ending(self, member_id, external_member_id, trial_end) -> bool:
        self.sent.append(("trial_ending", member_id, trial_end))
        return True


class SleepRecorder:
    """Stands in for time.sleep; records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# =============================================================================
# Payload builders
# =============================================================================


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def subscription_object(
    subscription_id: str,
    customer_id: str,
    status: str = "active",
    period_end: Optional[datetime] = None,
    trial_end: Optional[datetime] = None,
) -> dict:
    period_end = period_end or FIXED_NOW + timedelta(days=30)
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "current_period_start": epoch(period_end - timedelta(days=30)),
        "current_period_end": epoch(period_end),
        "trial_end": epoch(trial_end) if trial_end else None,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
    }


def event_payload(
    event_id: str,
    event_type: str,
    obj: dict,
    previous_attributes: Optional[dict] = None,
) -> dict:
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": data,
    }


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def database():
    """Fresh in-memory database per test."""
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture
def config():
    return ReconcilerConfig(
        database_url="sqlite://",
        paid_role_id=PAID_ROLE_ID,
        guild_id=GUILD_ID,
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def role_client():
    return FakeRoleClient()


@pytest.fixture
def billing_client():
    return FakeBillingClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def components(database, config, role_client, billing_client, notifier, sleeper, now):
    """Fully wired component graph over fakes and the test database."""
    return build_components(
        config,
        database=database,
        role_client=role_client,
        billing_client=billing_client,
        notifier=notifier,
        verifier=StripeSignatureVerifier(WEBHOOK_SECRET),
        clock=lambda: now,
        sleep=sleeper,
        create_tables=False,
    )


@pytest.fixture
def make_member(database):
    """Create a member directly in the store; returns its id."""

    def _make(
        tier: str = Tier.FREE,
        customer_id: Optional[str] = None,
        external_member_id: Optional[str] = None,
        subscription_ends_at: Optional[datetime] = None,
        grace_ends_at: Optional[datetime] = None,
        grace_started_at: Optional[datetime] = None,
    ) -> str:
        with database.session_scope() as session:
            member = Member(
                external_member_id=external_member_id or f"discord-{uuid.uuid4().hex[:10]}",
                billing_customer_id=customer_id,
                tier=tier,
                subscription_ends_at=subscription_ends_at,
                grace_ends_at=grace_ends_at,
            )
            session.add(member)
            session.flush()
            if tier == Tier.GRACE:
                session.add(GracePeriodEntry(
                    member_id=member.id,
                    grace_started_at=grace_started_at or grace_ends_at - timedelta(days=7),
                    grace_ends_at=grace_ends_at,
                ))
            return member.id

    return _make


@pytest.fixture
def load_member(database):
    """Reload a member (and its grace entry) in a fresh session."""

    def _load(member_id: str):
        with database.session_scope() as session:
            member = session.get(Member, member_id)
            entry = session.query(GracePeriodEntry).filter(
                GracePeriodEntry.member_id == member_id
            ).first()
            return member, entry

    return _load


@pytest.fixture
def build_subscription():
    """Stripe subscription object builder."""
    return subscription_object


@pytest.fixture
def build_event():
    """Stripe event envelope builder."""
    return event_payload


@pytest.fixture
def add_billing_subscription(billing_client, build_subscription):
    """Register a subscription with the fake billing client."""

    def _add(subscription_id, customer_id, status="active", period_end=None):
        obj = build_subscription(subscription_id, customer_id, status=status, period_end=period_end)
        return billing_client.add(SubscriptionData.from_dict(obj))

    return _add
