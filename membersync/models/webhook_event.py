"""
ProcessedWebhook model for tracking applied billing webhooks.

Used for idempotency - ensures webhooks are applied at most once.
"""

import uuid

from sqlalchemy import Column, String, Index

from membersync.models.base import Base, UTCDateTime, utcnow


class ProcessedWebhook(Base):
    """
    Idempotency ledger entry: external event id -> processed-at.

    The billing provider delivers webhooks at least once. A row here means the
    event was fully applied; rows are written once and never updated.
    """

    __tablename__ = "processed_webhooks"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    external_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Billing provider event id (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Event type (e.g., customer.subscription.deleted)"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="When the webhook was applied"
    )

    __table_args__ = (
        Index("idx_processed_webhooks_processed", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhook(event_id={self.external_event_id}, type={self.event_type})>"
