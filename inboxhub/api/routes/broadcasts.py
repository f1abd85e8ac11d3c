"""
Broadcast API: bulk sends to a channel's contacts with per-recipient outcomes.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.errors import Conflict, NotFound, ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import (
    Broadcast,
    BroadcastRecipient,
    BroadcastStatus,
    Tag,
    User,
)
from inboxhub.services import broadcast_service
from inboxhub.services.access_resolver import AccessResolver, ChannelAccess
from inboxhub.services.channels.line import preview_for
from inboxhub.services.notifier import NotificationRegistry, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/broadcasts", tags=["Broadcasts"])


class BroadcastCreate(BaseModel):
    channel_id: int
    message_type: str = "text"
    content: Optional[str] = None
    media_url: Optional[str] = None
    flex_content: Optional[Any] = None
    messages: Optional[List[Dict[str, Any]]] = None
    target_type: str = "all"
    target_tags: List[int] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None


class BroadcastUpdate(BaseModel):
    message_type: Optional[str] = None
    content: Optional[str] = None
    media_url: Optional[str] = None
    flex_content: Optional[Any] = None
    messages: Optional[List[Dict[str, Any]]] = None
    target_type: Optional[str] = None
    target_tags: Optional[List[int]] = None
    scheduled_at: Optional[datetime] = None


def _validate_targets(db: Session, access: ChannelAccess, target_type: str, target_tags: List[int]):
    if target_type not in broadcast_service.TARGET_TYPES:
        raise ValidationError("target_type must be all or tagged")
    if target_type == "tagged":
        if not target_tags:
            raise ValidationError("Choose at least one tag")
        found = db.query(func.count(Tag.id)).filter(
            Tag.id.in_(target_tags), Tag.owner_id == access.channel.user_id
        ).scalar()
        if found != len(set(target_tags)):
            raise ValidationError("Some tags do not exist")


def _validate_content(broadcast: Broadcast):
    if broadcast.message_type not in broadcast_service.BROADCAST_MESSAGE_TYPES:
        raise ValidationError(
            f"message_type must be one of: {', '.join(broadcast_service.BROADCAST_MESSAGE_TYPES)}"
        )
    broadcast_service.build_platform_messages(broadcast)
    if not broadcast.content:
        broadcast.content = preview_for(broadcast.message_type)


def _load(db: Session, user: User, broadcast_id: int, capability: Optional[str] = None, write: bool = False):
    broadcast = db.query(Broadcast).filter(Broadcast.id == broadcast_id).first()
    if not broadcast:
        raise NotFound("Broadcast not found")
    try:
        access = AccessResolver.require(
            db, user.id, broadcast.channel, capability=capability, write=write,
            message="You do not have permission to broadcast on this channel",
        )
    except NotFound:
        raise NotFound("Broadcast not found")
    return broadcast, access


@router.get("/user-count")
async def user_count(
    channel_id: int = Query(...),
    target_type: str = Query("all"),
    target_tags: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    AccessResolver.get_channel(db, current_user.id, channel_id)
    contacts = broadcast_service.eligible_contacts(db, channel_id, target_type, target_tags)
    return {"success": True, "data": {"count": len(contacts)}}


@router.get("")
async def list_broadcasts(
    channel_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    channel_ids = AccessResolver.accessible_channel_ids(db, current_user.id)
    if channel_id is not None:
        if channel_id not in channel_ids:
            raise NotFound("Channel not found")
        channel_ids = [channel_id]
    if not channel_ids:
        return {"success": True, "data": []}

    query = db.query(Broadcast).filter(Broadcast.channel_id.in_(channel_ids))
    if status:
        query = query.filter(Broadcast.status == status)
    broadcasts = query.order_by(Broadcast.created_at.desc(), Broadcast.id.desc()).all()

    data = []
    for broadcast in broadcasts:
        item = broadcast.to_dict()
        item["channel"] = broadcast.channel.to_brief()
        data.append(item)
    return {"success": True, "data": data}


@router.post("")
async def create_broadcast(
    request: BroadcastCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    access = AccessResolver.get_channel(
        db, current_user.id, request.channel_id, capability="can_broadcast",
        message="You do not have permission to broadcast on this channel",
    )
    _validate_targets(db, access, request.target_type, request.target_tags)

    broadcast = Broadcast(
        channel_id=request.channel_id,
        message_type=request.message_type,
        content=request.content,
        media_url=request.media_url,
        flex_content=request.flex_content,
        messages=request.messages,
        target_type=request.target_type,
        target_tags=request.target_tags,
        scheduled_at=request.scheduled_at,
        status=BroadcastStatus.SCHEDULED.value if request.scheduled_at else BroadcastStatus.DRAFT.value,
        created_by=current_user.id,
    )
    _validate_content(broadcast)

    db.add(broadcast)
    db.commit()
    db.refresh(broadcast)
    logger.info(f"[Broadcast] {broadcast.id} created on channel {broadcast.channel_id} ({broadcast.status})")
    return {"success": True, "data": broadcast.to_dict()}


@router.get("/{broadcast_id}")
async def get_broadcast(
    broadcast_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    broadcast, _ = _load(db, current_user, broadcast_id)
    data = broadcast.to_dict()
    data["channel"] = broadcast.channel.to_brief()
    return {"success": True, "data": data}


@router.put("/{broadcast_id}")
async def update_broadcast(
    broadcast_id: int,
    request: BroadcastUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    broadcast, access = _load(db, current_user, broadcast_id, capability="can_broadcast")
    if not broadcast.is_dispatchable:
        raise Conflict("Only draft or scheduled broadcasts can be edited")

    fields = request.model_fields_set
    for name in ("message_type", "content", "media_url", "flex_content", "messages", "target_type", "target_tags"):
        if name in fields:
            setattr(broadcast, name, getattr(request, name))
    if "scheduled_at" in fields:
        broadcast.scheduled_at = request.scheduled_at
        broadcast.status = (
            BroadcastStatus.SCHEDULED.value if request.scheduled_at else BroadcastStatus.DRAFT.value
        )

    _validate_targets(db, access, broadcast.target_type, broadcast.target_tags or [])
    _validate_content(broadcast)
    db.commit()
    db.refresh(broadcast)
    return {"success": True, "data": broadcast.to_dict()}


@router.delete("/{broadcast_id}")
async def delete_broadcast(
    broadcast_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    broadcast, _ = _load(db, current_user, broadcast_id, capability="can_broadcast")
    if broadcast.status == BroadcastStatus.SENDING.value:
        raise Conflict("A broadcast cannot be deleted while it is sending")
    db.delete(broadcast)
    db.commit()
    return {"success": True, "message": "Broadcast deleted"}


@router.post("/{broadcast_id}/cancel")
async def cancel_broadcast(
    broadcast_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    broadcast, _ = _load(db, current_user, broadcast_id, capability="can_broadcast")
    if not broadcast.is_dispatchable:
        raise Conflict(f"Broadcast is already {broadcast.status}")
    broadcast.status = BroadcastStatus.CANCELLED.value
    db.commit()
    return {"success": True, "data": broadcast.to_dict()}


@router.post("/{broadcast_id}/send")
async def send_broadcast(
    broadcast_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    broadcast, _ = _load(db, current_user, broadcast_id, capability="can_broadcast", write=True)
    broadcast = await broadcast_service.dispatch(db, broadcast, sent_by=current_user.id, notifier=notifier)
    return {
        "success": True,
        "message": f"Sent to {broadcast.sent_count} of {broadcast.target_count} recipients",
        "data": broadcast.to_dict(),
    }


@router.get("/{broadcast_id}/recipients")
async def list_recipients(
    broadcast_id: int,
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    broadcast, _ = _load(db, current_user, broadcast_id)

    counts = dict(
        db.query(BroadcastRecipient.status, func.count(BroadcastRecipient.id))
        .filter(BroadcastRecipient.broadcast_id == broadcast.id)
        .group_by(BroadcastRecipient.status)
        .all()
    )
    query = db.query(BroadcastRecipient).filter(BroadcastRecipient.broadcast_id == broadcast.id)
    if status:
        query = query.filter(BroadcastRecipient.status == status)
    recipients = query.order_by(BroadcastRecipient.id).all()

    return {
        "success": True,
        "data": {
            "recipients": [r.to_dict() for r in recipients],
            "counts": {
                "total": sum(counts.values()),
                "sent": counts.get("sent", 0),
                "failed": counts.get("failed", 0),
                "pending": counts.get("pending", 0),
            },
        },
    }
