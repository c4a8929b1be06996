"""
SubscriptionRecord model mirroring one billing-provider subscription.

Upserted by external subscription id. A member may accumulate several rows
over time (one per subscription lifetime); the most recently updated row is
authoritative for the member's current tier.
"""

from sqlalchemy import (
    Column, String, Boolean, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from membersync.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class SubscriptionStatus:
    """Billing provider subscription status vocabulary."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"

    ALL = (
        TRIALING, ACTIVE, PAST_DUE, CANCELED,
        UNPAID, INCOMPLETE, INCOMPLETE_EXPIRED,
    )
    # Statuses that grant access
    ENTITLED = (TRIALING, ACTIVE)
    # Dunning statuses: billing retries in progress, access kept
    DUNNING = (PAST_DUE, UNPAID)


class SubscriptionRecord(Base, TimestampMixin):
    """Mirrored state of a single billing-provider subscription."""

    __tablename__ = "subscription_records"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    member_id = Column(
        String(36),
        ForeignKey("members.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    external_subscription_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Billing provider subscription id"
    )
    price_id = Column(
        String(255),
        nullable=True
    )

    status = Column(
        String(32),
        nullable=False,
        index=True
    )

    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    trial_start = Column(UTCDateTime, nullable=True)
    trial_end = Column(UTCDateTime, nullable=True)
    cancel_at = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime, nullable=True)

    member = relationship(
        "Member",
        back_populates="subscriptions"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled', "
            "'unpaid', 'incomplete', 'incomplete_expired')",
            name="ck_subscription_records_status"
        ),
        Index("ix_subscription_records_member_updated", "member_id", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id}, "
            f"external_subscription_id={self.external_subscription_id}, status={self.status})>"
        )

    @property
    def is_entitled(self) -> bool:
        return self.status in SubscriptionStatus.ENTITLED
