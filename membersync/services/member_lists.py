"""
Read surface consumed by the external role-synchronizing agent.

Pure projections of the member table: no business logic, no clock reads.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from membersync.database.session import Database
from membersync.models.member import Member, Tier


@dataclass
class MemberListEntry:
    member_id: str
    external_member_id: str
    tier: str
    subscription_ends_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "external_member_id": self.external_member_id,
            "tier": self.tier,
            "subscription_ends_at": self.subscription_ends_at.isoformat() if self.subscription_ends_at else None,
            "grace_ends_at": self.grace_ends_at.isoformat() if self.grace_ends_at else None,
        }


class MemberListing:
    """Lists of members by tier."""

    def __init__(self, database: Database):
        self.database = database

    def _list(self, tiers) -> List[MemberListEntry]:
        with self.database.session_scope() as session:
            rows = (
                session.query(Member)
                .filter(Member.tier.in_(tiers))
                .order_by(Member.created_at.asc(), Member.id.asc())
                .all()
            )
            return [
                MemberListEntry(
                    member_id=m.id,
                    external_member_id=m.external_member_id,
                    tier=m.tier,
                    subscription_ends_at=m.subscription_ends_at if m.tier == Tier.PAID else None,
                    grace_ends_at=m.grace_ends_at,
                )
                for m in rows
            ]

    def subscribed(self) -> List[MemberListEntry]:
        """Members with tier=paid and their subscription end."""
        return self._list((Tier.PAID,))

    def grace(self) -> List[MemberListEntry]:
        """Members with tier=grace and their grace end."""
        return self._list((Tier.GRACE,))

    def all(self) -> List[MemberListEntry]:
        """Paid and grace members together."""
        return self._list((Tier.PAID, Tier.GRACE))
