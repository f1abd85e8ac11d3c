"""
Quick replies: canned messages per channel.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.errors import NotFound, ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import QuickReply, User
from inboxhub.models.entities.quick_reply import MAX_QUICK_REPLY_MESSAGES
from inboxhub.services.access_resolver import AccessResolver
from inboxhub.services.channels.line import convert_message_input

router = APIRouter(prefix="/quick-replies", tags=["Quick Replies"])

QUICK_REPLY_TYPES = ("text", "image", "flex")


class QuickReplyCreate(BaseModel):
    channel_id: int
    title: str = Field(..., min_length=1, max_length=255)
    shortcut: Optional[str] = Field(None, max_length=50)
    messages: List[Dict[str, Any]]
    sort_order: int = 0


class QuickReplyUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    shortcut: Optional[str] = Field(None, max_length=50)
    messages: Optional[List[Dict[str, Any]]] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


def validate_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not messages:
        raise ValidationError("At least one message is required")
    if len(messages) > MAX_QUICK_REPLY_MESSAGES:
        raise ValidationError(f"At most {MAX_QUICK_REPLY_MESSAGES} messages per quick reply")
    for item in messages:
        if item.get("type") not in QUICK_REPLY_TYPES:
            raise ValidationError(f"Message type must be one of: {', '.join(QUICK_REPLY_TYPES)}")
        convert_message_input(item)
    return messages


def _load(db: Session, user: User, quick_reply_id: int, capability: Optional[str] = None) -> QuickReply:
    quick_reply = db.query(QuickReply).filter(QuickReply.id == quick_reply_id).first()
    if not quick_reply:
        raise NotFound("Quick reply not found")
    try:
        AccessResolver.get_channel(
            db, user.id, quick_reply.channel_id, capability=capability,
            message="You do not have permission to manage quick replies",
        )
    except NotFound:
        raise NotFound("Quick reply not found")
    return quick_reply


@router.get("")
async def list_quick_replies(
    channel_id: int = Query(...),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    AccessResolver.get_channel(db, current_user.id, channel_id)
    query = db.query(QuickReply).filter(QuickReply.channel_id == channel_id)
    if not include_inactive:
        query = query.filter(QuickReply.is_active.is_(True))
    items = query.order_by(QuickReply.sort_order, QuickReply.id).all()
    return {"success": True, "data": [q.to_dict() for q in items]}


@router.post("")
async def create_quick_reply(
    request: QuickReplyCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    AccessResolver.get_channel(
        db, current_user.id, request.channel_id, capability="can_reply",
        message="You do not have permission to manage quick replies",
    )
    quick_reply = QuickReply(
        channel_id=request.channel_id,
        created_by=current_user.id,
        title=request.title.strip(),
        shortcut=request.shortcut,
        messages=validate_messages(request.messages),
        sort_order=request.sort_order,
    )
    db.add(quick_reply)
    db.commit()
    db.refresh(quick_reply)
    return {"success": True, "data": quick_reply.to_dict()}


@router.put("/{quick_reply_id}")
async def update_quick_reply(
    quick_reply_id: int,
    request: QuickReplyUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    quick_reply = _load(db, current_user, quick_reply_id, capability="can_reply")
    if request.title is not None:
        quick_reply.title = request.title.strip()
    if request.shortcut is not None:
        quick_reply.shortcut = request.shortcut or None
    if request.messages is not None:
        quick_reply.messages = validate_messages(request.messages)
    if request.is_active is not None:
        quick_reply.is_active = request.is_active
    if request.sort_order is not None:
        quick_reply.sort_order = request.sort_order
    db.commit()
    db.refresh(quick_reply)
    return {"success": True, "data": quick_reply.to_dict()}


@router.delete("/{quick_reply_id}")
async def delete_quick_reply(
    quick_reply_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    quick_reply = _load(db, current_user, quick_reply_id, capability="can_reply")
    db.delete(quick_reply)
    db.commit()
    return {"success": True, "message": "Quick reply deleted"}


@router.post("/{quick_reply_id}/use")
async def use_quick_reply(
    quick_reply_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    quick_reply = _load(db, current_user, quick_reply_id)
    quick_reply.use_count = (quick_reply.use_count or 0) + 1
    db.commit()
    return {"success": True, "data": {"id": quick_reply.id, "use_count": quick_reply.use_count}}
