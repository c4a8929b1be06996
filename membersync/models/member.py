"""
Member model: one person whose access tier is reconciled.

CRITICAL: tier is written only through the tier state machine
(via the event dispatcher or the daily sweep). Members are never deleted,
only transitioned to free.
"""

from sqlalchemy import (
    Column, String, Integer, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from membersync.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class Tier:
    """Member tier values. Exactly one holds at any time."""
    FREE = "free"
    PAID = "paid"
    GRACE = "grace"

    ALL = (FREE, PAID, GRACE)


class Member(Base, TimestampMixin):
    """
    A member tracked across billing, local tier and role membership.

    Invariants (enforced by check constraints and the store):
    - tier is one of free/paid/grace
    - grace_ends_at is non-null iff tier == grace
    - subscription_ends_at is required while tier == paid

    The version column is a compare-and-set counter: every flush issues
    UPDATE ... WHERE version = :expected, so two writers racing on the same
    row cannot silently overwrite each other.
    """

    __tablename__ = "members"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    external_member_id = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="Stable identity-provider member id (Discord user id). Immutable."
    )
    billing_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing provider customer id, null until first checkout"
    )
    email = Column(
        String(255),
        nullable=True
    )

    tier = Column(
        String(16),
        nullable=False,
        default=Tier.FREE,
        comment="free | paid | grace"
    )
    subscription_ends_at = Column(
        UTCDateTime,
        nullable=True,
        comment="End of the paid period; required when tier=paid"
    )
    grace_ends_at = Column(
        UTCDateTime,
        nullable=True,
        comment="End of grace; non-null iff tier=grace"
    )

    version = Column(
        Integer,
        nullable=False,
        default=1
    )

    subscriptions = relationship(
        "SubscriptionRecord",
        back_populates="member",
        lazy="dynamic"
    )
    grace_period = relationship(
        "GracePeriodEntry",
        back_populates="member",
        uselist=False
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "tier IN ('free', 'paid', 'grace')",
            name="ck_members_tier"
        ),
        CheckConstraint(
            "(tier = 'grace' AND grace_ends_at IS NOT NULL) "
            "OR (tier <> 'grace' AND grace_ends_at IS NULL)",
            name="ck_members_grace_ends_at"
        ),
        Index("ix_members_tier_subscription_ends", "tier", "subscription_ends_at"),
        Index("ix_members_tier_grace_ends", "tier", "grace_ends_at"),
    )

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, external_member_id={self.external_member_id}, tier={self.tier})>"
