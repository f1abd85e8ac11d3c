"""
Channel management API.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.config import settings
from inboxhub.core.errors import Conflict, Forbidden, ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import AdminPermission, Channel, ChannelStatus, GrantStatus, User
from inboxhub.services.access_resolver import AccessResolver, ChannelAccess
from inboxhub.services.channels import ChannelAPIError
from inboxhub.services.channels.line import get_line_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["Channels"])


class ChannelCreate(BaseModel):
    channel_name: str = Field(..., min_length=1, max_length=255)
    channel_id: str = Field(..., min_length=1, max_length=100)
    channel_secret: str = Field(..., min_length=1)
    channel_access_token: str = Field(..., min_length=1)


class ChannelUpdate(BaseModel):
    channel_name: Optional[str] = Field(None, min_length=1, max_length=255)
    channel_secret: Optional[str] = None
    channel_access_token: Optional[str] = None
    status: Optional[str] = None


def serialize_channel(access: ChannelAccess) -> dict:
    data = access.channel.to_dict()
    data["is_owner"] = access.is_owner
    data["permissions"] = access.permissions()
    return data


def webhook_url_for(platform_channel_id: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/api/webhook/{platform_channel_id}"


async def fetch_bot_info(channel: Channel) -> dict:
    """Best-effort bot info lookup; an empty dict when the platform refuses."""
    try:
        return await get_line_client(channel).get_channel_info()
    except ChannelAPIError as e:
        logger.warning(f"[LINE API] Bot info lookup failed for channel {channel.channel_id}: {e.message}")
        return {}


@router.get("")
async def list_channels(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Every channel the caller owns or was granted, with effective permissions."""
    channels = AccessResolver.accessible_channels(db, current_user.id)
    if status:
        channels = [c for c in channels if c.status == status]
    access_map = AccessResolver.capability_map(db, current_user.id, channels)
    return {"success": True, "data": [serialize_channel(access_map[c.id]) for c in channels]}


@router.post("")
async def create_channel(
    request: ChannelCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not current_user.can_own_channels:
        raise Forbidden("Team accounts cannot own channels")

    existing = db.query(Channel).filter(
        Channel.user_id == current_user.id,
        Channel.channel_id == request.channel_id,
    ).first()
    if existing:
        raise Conflict("This channel has already been added")

    channel = Channel(
        user_id=current_user.id,
        channel_name=request.channel_name.strip(),
        channel_id=request.channel_id.strip(),
        webhook_url=webhook_url_for(request.channel_id.strip()),
        status=ChannelStatus.ACTIVE.value,
    )
    channel.channel_secret = request.channel_secret
    channel.channel_access_token = request.channel_access_token

    info = await fetch_bot_info(channel)
    channel.basic_id = info.get("basicId")
    channel.picture_url = info.get("pictureUrl")

    db.add(channel)
    db.commit()
    db.refresh(channel)
    logger.info(f"User {current_user.id} added channel {channel.id} ({channel.channel_id})")
    return {"success": True, "message": "Channel created", "data": channel.to_dict()}


@router.get("/{channel_id}")
async def get_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    access = AccessResolver.get_channel(db, current_user.id, channel_id)
    return {"success": True, "data": serialize_channel(access)}


@router.put("/{channel_id}")
async def update_channel(
    channel_id: int,
    request: ChannelUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    access = AccessResolver.get_channel(
        db, current_user.id, channel_id,
        capability="can_manage_channel",
        message="You do not have permission to manage this channel",
    )
    channel = access.channel

    if request.status is not None:
        if not access.is_owner:
            raise Forbidden("Only the owner can change the channel status")
        if request.status not in {s.value for s in ChannelStatus}:
            raise ValidationError("status must be active or inactive")
        channel.status = request.status
    if request.channel_name is not None:
        channel.channel_name = request.channel_name.strip()
    if request.channel_secret:
        channel.channel_secret = request.channel_secret
    if request.channel_access_token:
        channel.channel_access_token = request.channel_access_token

    db.commit()
    db.refresh(channel)
    logger.info(f"User {current_user.id} updated channel {channel.id} (status={channel.status})")
    return {"success": True, "message": "Channel updated", "data": channel.to_dict()}


@router.delete("/{channel_id}")
async def delete_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    access = AccessResolver.get_channel(
        db, current_user.id, channel_id,
        capability="is_owner",
        message="Only the owner can delete this channel",
    )
    db.delete(access.channel)
    db.commit()
    logger.info(f"User {current_user.id} deleted channel {channel_id}")
    return {"success": True, "message": "Channel deleted"}


@router.post("/{channel_id}/refresh")
async def refresh_channel(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    access = AccessResolver.get_channel(
        db, current_user.id, channel_id,
        capability="can_manage_channel",
        write=True,
        message="You do not have permission to manage this channel",
    )
    channel = access.channel
    info = await fetch_bot_info(channel)
    if info:
        channel.basic_id = info.get("basicId") or channel.basic_id
        channel.picture_url = info.get("pictureUrl") or channel.picture_url
        if info.get("displayName"):
            channel.channel_name = info["displayName"]
        db.commit()
        db.refresh(channel)
    return {"success": True, "data": channel.to_dict(), "refreshed": bool(info)}


@router.get("/{channel_id}/admins")
async def list_channel_admins(
    channel_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Active grants that reach the channel: channel-scoped plus owner-wide."""
    access = AccessResolver.get_channel(db, current_user.id, channel_id)
    channel = access.channel
    grants = db.query(AdminPermission).filter(
        AdminPermission.status == GrantStatus.ACTIVE.value,
        AdminPermission.admin_id.isnot(None),
        or_(
            AdminPermission.channel_id == channel.id,
            and_(AdminPermission.channel_id.is_(None), AdminPermission.owner_id == channel.user_id),
        ),
    ).all()
    return {
        "success": True,
        "data": {
            "owner": channel.owner.to_brief() if channel.owner else None,
            "admins": [grant.to_dict() for grant in grants],
        },
    }
