"""
Member list endpoints consumed by the role-synchronizing agent.

Pure projections of the member table.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from membersync.api.dependencies import get_components
from membersync.app_state import Components
from membersync.services.member_lists import MemberListEntry

router = APIRouter(prefix="/api/lists", tags=["lists"])


class MemberListItem(BaseModel):
    member_id: str
    external_member_id: str
    tier: str
    subscription_ends_at: Optional[str] = None
    grace_ends_at: Optional[str] = None


class MemberListResponse(BaseModel):
    count: int
    members: List[MemberListItem]


def _response(entries: List[MemberListEntry]) -> MemberListResponse:
    return MemberListResponse(
        count=len(entries),
        members=[MemberListItem(**entry.to_dict()) for entry in entries],
    )


@router.get("/subscribed", response_model=MemberListResponse)
def list_subscribed(components: Components = Depends(get_components)):
    """Members with tier=paid and their subscription end."""
    return _response(components.listing.subscribed())


@router.get("/grace", response_model=MemberListResponse)
def list_grace(components: Components = Depends(get_components)):
    """Members with tier=grace and their grace end."""
    return _response(components.listing.grace())


@router.get("/all", response_model=MemberListResponse)
def list_all(components: Components = Depends(get_components)):
    """Paid and grace members."""
    return _response(components.listing.all())
