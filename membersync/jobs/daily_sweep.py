"""
Daily reconciliation sweep.

Re-derives due tier transitions purely from timestamps, independent of
whether any billing event was ever received:

Step 1: tier=paid and subscription_ends_at <= now  -> grace (no role change)
Step 2: tier=grace and grace_ends_at <= now        -> free  (revoke role)

Each member is handled in its own transaction with the selection predicate
re-checked under the row lock, so an interrupted run can simply be re-run.
The tier commit always precedes role sync; a role failure never undoes it.

Usage:
    python -m membersync.jobs.daily_sweep
"""

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from membersync.config.settings import ReconcilerConfig
from membersync.database.session import Database
from membersync.errors import InvariantViolation
from membersync.models.audit_event import AuditCategory
from membersync.models.member import Tier
from membersync.repositories.subscription_store import SubscriptionStore
from membersync.services.audit_trail import AuditTrail
from membersync.services.reminders import ReminderNotifier
from membersync.services.role_sync import RoleSyncAdapter
from membersync.services.tier_state_machine import Intent, RoleIntent, transition

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    """Track sweep run statistics."""
    now: datetime
    grace_started: int = 0
    grace_ended: int = 0
    errors: int = 0
    role_failures: int = 0
    failed_member_ids: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "now": self.now.isoformat(),
            "grace_started": self.grace_started,
            "grace_ended": self.grace_ended,
            "errors": self.errors,
            "role_failures": self.role_failures,
            "duration_seconds": duration,
        }


class DailySweep:
    """Time-driven backstop that applies expiry transitions."""

    def __init__(
        self,
        database: Database,
        store: SubscriptionStore,
        role_sync: RoleSyncAdapter,
        audit: AuditTrail,
        config: ReconcilerConfig,
        notifier: Optional[ReminderNotifier] = None,
    ):
        self.database = database
        self.store = store
        self.role_sync = role_sync
        self.audit = audit
        self.config = config
        self.notifier = notifier
        self.batch_size = config.sweep_batch_size

    def run_sweep(self, now: datetime) -> SweepSummary:
        """
        Run one sweep judged against a single timestamp.

        Args:
            now: Wall-clock time read once by the caller

        Returns:
            SweepSummary

        Raises:
            InvariantViolation: If a member's persisted state is inconsistent
        """
        summary = SweepSummary(now=now)
        logger.info("Starting daily sweep", extra={"now": now.isoformat()})

        self._run_step(
            summary,
            select=self.store.members_due_for_grace,
            process=self._start_grace,
            step="expire_subscriptions",
        )
        self._run_step(
            summary,
            select=self.store.members_due_for_expiry,
            process=self._end_grace,
            step="expire_grace",
        )

        result = summary.to_dict()
        self.audit.record_detached(AuditCategory.SWEEP_COMPLETED, payload=result)
        logger.info("Daily sweep completed", extra=result)
        return summary

    def _run_step(
        self,
        summary: SweepSummary,
        select: Callable,
        process: Callable[[str, SweepSummary], None],
        step: str,
    ) -> None:
        """Process bounded batches until the predicate selects nothing new."""
        seen: Set[str] = set()
        batches = 0

        while True:
            with self.database.session_scope() as session:
                member_ids = select(session, summary.now, self.batch_size, exclude_ids=seen)
            if not member_ids:
                break

            batches += 1
            logger.info(
                "Sweep batch selected",
                extra={"step": step, "batch": batches, "count": len(member_ids)},
            )
            for member_id in member_ids:
                seen.add(member_id)
                try:
                    process(member_id, summary)
                except InvariantViolation:
                    raise
                except Exception:
                    summary.errors += 1
                    summary.failed_member_ids.append(member_id)
                    logger.error(
                        "Sweep failed for member",
                        extra={"step": step, "member_id": member_id},
                        exc_info=True,
                    )

    def _start_grace(self, member_id: str, summary: SweepSummary) -> None:
        """Step 1: paid member whose subscription ended without any event."""
        now = summary.now
        with self.database.session_scope() as session:
            member = self.store.get_member_for_update(session, member_id)
            if (
                member is None
                or member.tier != Tier.PAID
                or member.subscription_ends_at is None
                or member.subscription_ends_at > now
            ):
                return

            outcome = transition(
                member.tier,
                Intent.SUBSCRIPTION_EXPIRED,
                now,
                grace_period_days=self.config.grace_period_days,
                paid_role_id=self.config.paid_role_id,
            )
            self.store.apply_transition(session, member, outcome, now)
            self.audit.record(
                session,
                AuditCategory.GRACE_STARTED,
                member_id=member.id,
                payload={
                    "source": "sweep",
                    "subscription_ends_at": member.subscription_ends_at.isoformat(),
                    "grace_ends_at": outcome.grace_ends_at.isoformat(),
                },
            )
            external_member_id = member.external_member_id
            entry = self.store.get_grace_entry(session, member.id)
            remind = bool(entry and entry.reminder_enabled)
            grace_ends_at = outcome.grace_ends_at

        summary.grace_started += 1
        if self.notifier is not None and remind:
            self._notify_grace(member_id, external_member_id, grace_ends_at)

    def _end_grace(self, member_id: str, summary: SweepSummary) -> None:
        """Step 2: grace window over; downgrade to free, then revoke the role."""
        now = summary.now
        with self.database.session_scope() as session:
            member = self.store.get_member_for_update(session, member_id)
            if (
                member is None
                or member.tier != Tier.GRACE
                or member.grace_ends_at is None
                or member.grace_ends_at > now
            ):
                return

            grace_ended_at = member.grace_ends_at
            outcome = transition(
                member.tier,
                Intent.GRACE_EXPIRED,
                now,
                grace_period_days=self.config.grace_period_days,
                paid_role_id=self.config.paid_role_id,
            )
            self.store.apply_transition(session, member, outcome, now)
            self.audit.record(
                session,
                AuditCategory.GRACE_EXPIRED,
                member_id=member.id,
                payload={"source": "sweep", "grace_ends_at": grace_ended_at.isoformat()},
            )
            external_member_id = member.external_member_id
            role_intents: List[RoleIntent] = list(outcome.role_intents)

        summary.grace_ended += 1
        results = self.role_sync.apply_intents(member_id, external_member_id, role_intents)
        summary.role_failures += sum(1 for r in results if not r.success)

    def _notify_grace(self, member_id: str, external_member_id: str, grace_ends_at: datetime) -> None:
        try:
            self.notifier.grace_started(member_id, external_member_id, grace_ends_at)
        except Exception:
            logger.error("Reminder hook failed", extra={"member_id": member_id}, exc_info=True)


def main():
    """Entry point for running one sweep from the command line."""
    from membersync.app_state import build_components
    from membersync.config.settings import load_config
    from membersync.models.base import utcnow

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        components = build_components(load_config())
        try:
            summary = components.sweep.run_sweep(utcnow())
        finally:
            components.close()
        print(f"Sweep completed: {summary.to_dict()}")
        sys.exit(0)
    except Exception as e:
        logger.error("Sweep failed", exc_info=True)
        print(f"Sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
