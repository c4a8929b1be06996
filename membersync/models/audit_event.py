"""
AuditEvent and RoleChangeAttempt models for the immutable audit trail.

CRITICAL: Both tables are APPEND-ONLY.
Never update or delete rows - only insert new ones.
"""

from sqlalchemy import Column, String, Integer, Text, JSON, Index

from membersync.models.base import Base, UTCDateTime, generate_uuid, utcnow


class AuditOutcome:
    """Outcome of an audited attempt."""
    SUCCESS = "success"
    FAILURE = "failure"


class AuditCategory:
    """Audit event categories."""
    # Webhook ingestion
    WEBHOOK_APPLIED = "webhook.applied"
    WEBHOOK_DUPLICATE = "webhook.duplicate"
    WEBHOOK_FAILED = "webhook.failed"
    WEBHOOK_IGNORED = "webhook.ignored"

    # Subscription lifecycle
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    SUBSCRIPTION_RECORDED = "subscription.recorded"

    # Grace period
    GRACE_STARTED = "grace.started"
    GRACE_EXPIRED = "grace.expired"

    # Trial
    TRIAL_ENDING = "trial.ending"

    # Role sync
    ROLE_GRANT = "role.grant"
    ROLE_REVOKE = "role.revoke"

    # Sweep
    SWEEP_COMPLETED = "sweep.completed"


class AuditEvent(Base):
    """
    Superset log of every state-changing attempt and its outcome.

    Covers every dispatched webhook, every sweep-driven transition
    and every role mutation attempt.
    """

    __tablename__ = "audit_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    member_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Affected member (null for system-level events)"
    )

    category = Column(
        String(64),
        nullable=False,
        index=True
    )

    external_event_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider event id when the attempt came from a webhook"
    )

    payload = Column(
        JSON,
        nullable=True
    )

    outcome = Column(
        String(16),
        nullable=False,
        default=AuditOutcome.SUCCESS
    )

    error_detail = Column(
        Text,
        nullable=True
    )

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_audit_events_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent(category={self.category}, member_id={self.member_id}, outcome={self.outcome})>"


class RoleChangeAttempt(Base):
    """One role mutation request and its final outcome after retries."""

    __tablename__ = "role_change_attempts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    member_id = Column(
        String(36),
        nullable=True,
        index=True
    )
    external_member_id = Column(
        String(64),
        nullable=False
    )
    role_id = Column(
        String(64),
        nullable=False
    )

    action = Column(
        String(16),
        nullable=False,
        comment="grant | revoke"
    )
    outcome = Column(
        String(16),
        nullable=False,
        comment="success | failed"
    )
    attempt_count = Column(
        Integer,
        nullable=False,
        default=1
    )
    error_detail = Column(
        Text,
        nullable=True
    )

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("ix_role_change_attempts_outcome", "outcome"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoleChangeAttempt(member_id={self.member_id}, role_id={self.role_id}, "
            f"action={self.action}, outcome={self.outcome})>"
        )
