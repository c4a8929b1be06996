"""
Database models.

Importing this package registers every table on the shared Base metadata.
"""

from membersync.models.member import Member, Tier
from membersync.models.subscription import SubscriptionRecord, SubscriptionStatus
from membersync.models.grace_period import GracePeriodEntry
from membersync.models.webhook_event import ProcessedWebhook
from membersync.models.audit_event import (
    AuditEvent,
    AuditCategory,
    AuditOutcome,
    RoleChangeAttempt,
)

__all__ = [
    "Member",
    "Tier",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "GracePeriodEntry",
    "ProcessedWebhook",
    "AuditEvent",
    "AuditCategory",
    "AuditOutcome",
    "RoleChangeAttempt",
]
