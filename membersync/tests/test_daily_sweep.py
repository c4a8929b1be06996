"""
Tests for the daily reconciliation sweep and its scheduler.

Test classes:
- TestStartGrace: paid members past subscription end move to grace
- TestEndGrace: grace members past their deadline drop to free
- TestBatching: bounded batches until nothing new is selected
- TestRerun: interrupted or repeated runs converge
- TestSweepScheduler: injected clock, cycles and shutdown
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from membersync.errors import InvariantViolation
from membersync.integrations.discord.exceptions import RoleValidationError
from membersync.jobs.daily_sweep import DailySweep
from membersync.models.audit_event import AuditCategory, AuditEvent
from membersync.models.member import Member, Tier
from membersync.workers.sweep_scheduler import SweepScheduler


@pytest.fixture
def make_sweep(components):
    """Sweep over the shared component graph with config overrides."""

    def _make(**overrides):
        config = replace(components.config, **overrides)
        return DailySweep(
            components.database,
            components.store,
            components.role_sync,
            components.audit,
            config,
            notifier=components.notifier,
        )

    return _make


def _count(database, category):
    with database.session_scope() as session:
        return session.query(AuditEvent).filter(AuditEvent.category == category).count()


class TestStartGrace:
    """Member paid with subscription_ends_at in the past and no events."""

    def test_paid_expired_moves_to_grace(
        self, components, make_member, load_member, role_client, notifier, now
    ):
        member_id = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))

        summary = components.sweep.run_sweep(now)

        member, entry = load_member(member_id)
        assert member.tier == Tier.GRACE
        assert member.grace_ends_at == now + timedelta(days=7)
        assert entry.grace_started_at == now
        assert role_client.calls == []
        assert summary.grace_started == 1
        assert summary.grace_ended == 0
        assert notifier.sent == [("grace_started", member_id, now + timedelta(days=7))]

    def test_future_subscription_untouched(self, components, make_member, load_member, now):
        member_id = make_member(tier=Tier.PAID, subscription_ends_at=now + timedelta(hours=1))

        summary = components.sweep.run_sweep(now)

        member, _ = load_member(member_id)
        assert member.tier == Tier.PAID
        assert summary.grace_started == 0

    def test_grace_deadline_is_bounded(self, components, make_member, load_member, now):
        member_id = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=30))

        components.sweep.run_sweep(now)

        member, _ = load_member(member_id)
        assert now < member.grace_ends_at <= now + timedelta(days=7)

    def test_zero_day_grace_expires_in_same_run(
        self, make_sweep, make_member, load_member, role_client, now
    ):
        member_id = make_member(
            tier=Tier.PAID,
            subscription_ends_at=now - timedelta(days=1),
            external_member_id="discord-zero",
        )

        summary = make_sweep(grace_period_days=0).run_sweep(now)

        member, entry = load_member(member_id)
        assert member.tier == Tier.FREE
        assert entry is None
        assert summary.grace_started == 1
        assert summary.grace_ended == 1
        assert role_client.calls == [("revoke", "discord-zero", "role-paid")]


class TestEndGrace:
    """Member grace with grace_ends_at in the past."""

    def test_grace_expired_moves_to_free(
        self, components, make_member, load_member, role_client, database, now
    ):
        member_id = make_member(
            tier=Tier.GRACE,
            grace_ends_at=now - timedelta(days=1),
            external_member_id="discord-7",
        )

        summary = components.sweep.run_sweep(now)

        member, entry = load_member(member_id)
        assert member.tier == Tier.FREE
        assert member.grace_ends_at is None
        assert entry is None
        assert role_client.calls == [("revoke", "discord-7", "role-paid")]
        assert summary.grace_ended == 1
        assert _count(database, AuditCategory.GRACE_EXPIRED) == 1
        assert _count(database, AuditCategory.ROLE_REVOKE) == 1

    def test_grace_still_running_untouched(self, components, make_member, load_member, now):
        member_id = make_member(tier=Tier.GRACE, grace_ends_at=now + timedelta(days=3))

        components.sweep.run_sweep(now)

        member, entry = load_member(member_id)
        assert member.tier == Tier.GRACE
        assert entry is not None

    def test_revoke_failure_keeps_free_tier(
        self, components, make_member, load_member, role_client, now
    ):
        member_id = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(hours=1))
        role_client.default_error = RoleValidationError("Missing Permissions", status_code=403)

        summary = components.sweep.run_sweep(now)

        member, _ = load_member(member_id)
        assert member.tier == Tier.FREE
        assert summary.grace_ended == 1
        assert summary.role_failures == 1
        assert summary.errors == 0

    def test_unexpected_revoke_error_does_not_stop_the_batch(
        self, components, make_member, load_member, role_client, now
    ):
        first = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(days=2))
        second = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(days=1))
        role_client.script = [RuntimeError("boom")]

        summary = components.sweep.run_sweep(now)

        for member_id in (first, second):
            member, _ = load_member(member_id)
            assert member.tier == Tier.FREE
        assert summary.grace_ended == 2
        assert summary.role_failures == 1
        assert summary.errors == 0
        assert len(role_client.calls_for("revoke")) == 2


    def test_sweep_completion_is_audited(self, components, database, now):
        components.sweep.run_sweep(now)

        assert _count(database, AuditCategory.SWEEP_COMPLETED) == 1


class TestBatching:
    def test_all_batches_processed(self, make_sweep, make_member, load_member, now):
        ids = [
            make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(minutes=i + 1))
            for i in range(5)
        ]

        summary = make_sweep(sweep_batch_size=2).run_sweep(now)

        assert summary.grace_started == 5
        for member_id in ids:
            member, _ = load_member(member_id)
            assert member.tier == Tier.GRACE

    def test_member_changed_after_selection_is_skipped(
        self, components, make_member, load_member, monkeypatch, now
    ):
        """The predicate is re-checked under the row lock."""
        member_id = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))
        original_select = components.store.members_due_for_grace

        def _select_then_renew(session, at, limit, exclude_ids=()):
            selected = original_select(session, at, limit, exclude_ids=exclude_ids)
            if selected:
                member = session.get(Member, member_id)
                member.subscription_ends_at = now + timedelta(days=30)
            return selected

        monkeypatch.setattr(components.store, "members_due_for_grace", _select_then_renew)

        summary = components.sweep.run_sweep(now)

        member, _ = load_member(member_id)
        assert member.tier == Tier.PAID
        assert summary.grace_started == 0

    def test_invariant_violation_propagates(self, components, make_member, monkeypatch, now):
        make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))

        def _corrupt(session, member, result, at, subscription_ends_at=None):
            raise InvariantViolation("tier=grace with null grace_ends_at", member_id=member.id)

        monkeypatch.setattr(components.store, "apply_transition", _corrupt)

        with pytest.raises(InvariantViolation):
            components.sweep.run_sweep(now)

    def test_persistence_error_is_counted_and_skipped(
        self, components, make_member, load_member, monkeypatch, now
    ):
        broken = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=2))
        healthy = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))
        original_apply = components.store.apply_transition

        def _fail_for_one(session, member, result, at, subscription_ends_at=None):
            if member.id == broken:
                raise OperationalError("UPDATE members", {}, Exception("disk I/O error"))
            return original_apply(session, member, result, at, subscription_ends_at=subscription_ends_at)

        monkeypatch.setattr(components.store, "apply_transition", _fail_for_one)

        summary = components.sweep.run_sweep(now)

        assert summary.errors == 1
        assert summary.failed_member_ids == [broken]
        assert summary.grace_started == 1
        member, _ = load_member(healthy)
        assert member.tier == Tier.GRACE

    def test_unexpected_error_is_counted_and_skipped(
        self, components, make_member, load_member, monkeypatch, now
    ):
        broken = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(days=2))
        healthy = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(days=1))
        original_apply = components.store.apply_transition

        def _fail_for_one(session, member, result, at, subscription_ends_at=None):
            if member.id == broken:
                raise KeyError("grace_ends_at")
            return original_apply(session, member, result, at, subscription_ends_at=subscription_ends_at)

        monkeypatch.setattr(components.store, "apply_transition", _fail_for_one)

        summary = components.sweep.run_sweep(now)

        assert summary.errors == 1
        assert summary.failed_member_ids == [broken]
        assert summary.grace_ended == 1
        member, _ = load_member(healthy)
        assert member.tier == Tier.FREE
        member, _ = load_member(broken)
        assert member.tier == Tier.GRACE


class TestRerun:

    def test_second_run_is_noop(self, components, make_member, role_client, now):
        make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(days=1))
        make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))

        first = components.sweep.run_sweep(now)
        calls_after_first = list(role_client.calls)
        second = components.sweep.run_sweep(now)

        assert (first.grace_started, first.grace_ended) == (1, 1)
        assert (second.grace_started, second.grace_ended) == (0, 0)
        assert role_client.calls == calls_after_first

    def test_later_run_finishes_grace(self, components, make_member, load_member, role_client, now):
        member_id = make_member(tier=Tier.PAID, subscription_ends_at=now - timedelta(days=1))

        components.sweep.run_sweep(now)
        components.sweep.run_sweep(now + timedelta(days=7))

        member, _ = load_member(member_id)
        assert member.tier == Tier.FREE
        assert len(role_client.calls_for("revoke")) == 1


class TestSweepScheduler:
    def test_run_once_uses_injected_clock(self, components, make_member, load_member, now):
        member_id = make_member(tier=Tier.GRACE, grace_ends_at=now - timedelta(hours=1))
        scheduler = SweepScheduler(components.sweep, 60, clock=lambda: now, sleep=lambda s: None)

        summary = scheduler.run_once()

        assert summary.now == now
        assert summary.grace_ended == 1
        member, _ = load_member(member_id)
        assert member.tier == Tier.FREE

    def test_run_forever_stops_after_max_cycles(self, components, sleeper, now):
        scheduler = SweepScheduler(components.sweep, 3, clock=lambda: now, sleep=sleeper)

        scheduler.run_forever(max_cycles=2)

        assert scheduler.cycles == 2
        # One interval of one-second ticks between the two cycles
        assert sleeper.delays == [1, 1, 1]

    def test_shutdown_interrupts_wait(self, components, now):
        ticks = []

        def _sleep(seconds):
            ticks.append(seconds)
            scheduler.request_shutdown()

        scheduler = SweepScheduler(components.sweep, 3600, clock=lambda: now, sleep=_sleep)
        scheduler.run_forever()

        assert scheduler.cycles == 1
        assert ticks == [1]
        assert scheduler.shutting_down is True

    def test_failed_cycle_returns_none(self, components, monkeypatch, now):
        def _boom(at):
            raise RuntimeError("database unreachable")

        monkeypatch.setattr(components.sweep, "run_sweep", _boom)
        scheduler = SweepScheduler(components.sweep, 60, clock=lambda: now)

        assert scheduler.run_once() is None

    def test_invariant_violation_stops_scheduler(self, components, monkeypatch, now):
        def _corrupt(at):
            raise InvariantViolation("grace without deadline", member_id="m1")

        monkeypatch.setattr(components.sweep, "run_sweep", _corrupt)
        scheduler = SweepScheduler(components.sweep, 60, clock=lambda: now, sleep=lambda s: None)

        with pytest.raises(InvariantViolation):
            scheduler.run_forever()

    def test_interval_must_be_positive(self, components):
        with pytest.raises(ValueError):
            SweepScheduler(components.sweep, 0)
