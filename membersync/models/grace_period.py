"""
GracePeriodEntry model.

Exists iff the member's tier is grace; removed when the member leaves grace
in either direction (renewal or expiry).
"""

from sqlalchemy import Column, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from membersync.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class GracePeriodEntry(Base, TimestampMixin):
    """Grace window bookkeeping for one member."""

    __tablename__ = "grace_period_entries"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    member_id = Column(
        String(36),
        ForeignKey("members.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )

    grace_started_at = Column(UTCDateTime, nullable=False)
    grace_ends_at = Column(UTCDateTime, nullable=False, index=True)

    reminder_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the member receives grace reminders"
    )

    member = relationship(
        "Member",
        back_populates="grace_period"
    )

    def __repr__(self) -> str:
        return f"<GracePeriodEntry(member_id={self.member_id}, grace_ends_at={self.grace_ends_at})>"
