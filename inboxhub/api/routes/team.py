"""
Team API: invitations and delegated access grants.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user, get_optional_user
from inboxhub.models.database import get_db
from inboxhub.models.entities import User
from inboxhub.services import invitation_service

router = APIRouter(prefix="/team", tags=["Team"])


class InviteRequest(BaseModel):
    email: Optional[EmailStr] = None
    channel_id: Optional[int] = None
    permissions: Dict[str, Any] = {}


class MemberUpdate(BaseModel):
    permissions: Optional[Dict[str, Any]] = None
    status: Optional[str] = None


@router.get("")
async def list_team(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Grants the caller has handed out."""
    grants = invitation_service.list_team(db, current_user)
    return {"success": True, "data": [g.to_dict(include_token=True) for g in grants]}


@router.get("/memberships")
async def list_memberships(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Grants the caller holds on other owners' channels."""
    grants = invitation_service.list_memberships(db, current_user)
    data = []
    for grant in grants:
        item = grant.to_dict()
        item["owner"] = grant.owner.to_brief()
        data.append(item)
    return {"success": True, "data": data}


@router.post("/invite")
async def create_invite(
    request: InviteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    grant, email_sent = await invitation_service.create_invite(
        db,
        current_user,
        email=request.email,
        channel_id=request.channel_id,
        permissions=request.permissions,
    )
    return {
        "success": True,
        "data": {
            "id": grant.id,
            "invite_token": grant.invite_token,
            "invite_url": invitation_service.invite_url(grant.invite_token),
            "email_sent": email_sent,
        },
    }


@router.get("/invite/{token}")
async def get_invite(
    token: str,
    db: Session = Depends(get_db),
    current_user: Optional[User] = Depends(get_optional_user),
):
    """Preview an invitation before accepting; no login needed."""
    grant = invitation_service.fetch_invite(db, token)
    data = invitation_service.invite_preview(grant)
    data["logged_in"] = current_user is not None
    if current_user is not None:
        data["can_accept"] = grant.owner_id != current_user.id and grant.admin_id in (None, current_user.id)
    return {"success": True, "data": data}


@router.post("/invite/{token}")
async def accept_invite(
    token: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    grant = invitation_service.accept_invite(db, token, current_user)
    return {"success": True, "message": "You have joined the team", "data": grant.to_dict()}


@router.delete("/invite/{token}")
async def cancel_invite(
    token: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    invitation_service.cancel_invite(db, token, current_user)
    return {"success": True, "message": "Invitation cancelled"}


@router.get("/{grant_id}")
async def get_member(
    grant_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    grant = invitation_service.get_member(db, current_user, grant_id)
    return {"success": True, "data": grant.to_dict(include_token=True)}


@router.put("/{grant_id}")
async def update_member(
    grant_id: int,
    request: MemberUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    grant = invitation_service.update_member(
        db, current_user, grant_id, permissions=request.permissions, status=request.status
    )
    return {"success": True, "data": grant.to_dict()}


@router.delete("/{grant_id}")
async def remove_member(
    grant_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    invitation_service.remove_member(db, current_user, grant_id)
    return {"success": True, "message": "Team member removed"}
