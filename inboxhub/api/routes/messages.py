"""
Inbox API: conversations, their messages, and manual replies.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session, joinedload

from inboxhub.core.auth import get_current_user
from inboxhub.core.errors import Forbidden, NotFound, PlatformError, ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import (
    Conversation,
    ConversationStatus,
    LineUser,
    Message,
    MessageDirection,
    MessageSource,
    SourceType,
    Tag,
    User,
    conversation_tags,
)
from inboxhub.models.entities.conversation import CONVERSATION_STATUSES
from inboxhub.services.access_resolver import AccessResolver, ChannelAccess
from inboxhub.services.channels import ChannelAPIError
from inboxhub.services.channels.line import build_outgoing_message, get_line_client
from inboxhub.services.notifier import NotificationRegistry, get_notifier, notify_channel_audience

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


class ConversationUpdate(BaseModel):
    notes: Optional[str] = None
    assigned_to: Optional[int] = None


class StatusUpdate(BaseModel):
    status: str


class TagsUpdate(BaseModel):
    tag_ids: List[int] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    conversation_id: int
    message_type: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    package_id: Optional[str] = None
    sticker_id: Optional[str] = None


class RefreshProfileRequest(BaseModel):
    conversation_id: int


def _visible(access: ChannelAccess, conversation: Conversation, user_id: int) -> bool:
    """Without can_view_all a delegate only sees conversations assigned to them or to nobody."""
    if access.can("can_view_all"):
        return True
    return conversation.assigned_to is None or conversation.assigned_to == user_id


def load_conversation(
    db: Session,
    user: User,
    conversation_id: int,
    capability: Optional[str] = None,
    write: bool = False,
    message: Optional[str] = None,
) -> Tuple[Conversation, ChannelAccess]:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise NotFound("Conversation not found")
    try:
        access = AccessResolver.require(
            db, user.id, conversation.channel, capability=capability, write=write, message=message
        )
    except NotFound:
        raise NotFound("Conversation not found")
    if not _visible(access, conversation, user.id):
        raise NotFound("Conversation not found")
    return conversation, access


@router.get("/conversations")
async def list_conversations(
    channel_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    tag_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    channels = AccessResolver.accessible_channels(db, current_user.id)
    if channel_id is not None:
        channels = [c for c in channels if c.id == channel_id]
        if not channels:
            raise NotFound("Channel not found")
    if not channels:
        return {"success": True, "data": [], "total": 0}

    access_map = AccessResolver.capability_map(db, current_user.id, channels)
    full_ids = [cid for cid, access in access_map.items() if access.can("can_view_all")]
    limited_ids = [cid for cid, access in access_map.items() if not access.can("can_view_all")]

    scope = []
    if full_ids:
        scope.append(Conversation.channel_id.in_(full_ids))
    if limited_ids:
        scope.append(and_(
            Conversation.channel_id.in_(limited_ids),
            or_(Conversation.assigned_to.is_(None), Conversation.assigned_to == current_user.id),
        ))

    query = db.query(Conversation).join(LineUser, Conversation.contact_id == LineUser.id).filter(or_(*scope))
    if status and status != "all":
        query = query.filter(Conversation.status == status)
    if tag_id is not None:
        query = query.join(conversation_tags, conversation_tags.c.conversation_id == Conversation.id).filter(
            conversation_tags.c.tag_id == tag_id
        )
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(
            func.lower(LineUser.display_name).like(pattern),
            func.lower(Conversation.last_message_preview).like(pattern),
        ))

    total = query.count()
    conversations = query.options(
        joinedload(Conversation.channel), joinedload(Conversation.contact), joinedload(Conversation.assignee)
    ).order_by(
        Conversation.last_message_at.desc().nullslast(), Conversation.id.desc()
    ).offset(offset).limit(limit).all()

    return {"success": True, "data": [c.to_dict() for c in conversations], "total": total}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: int,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[int] = Query(None, description="Only messages with a smaller id"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, access = load_conversation(db, current_user, conversation_id)

    query = db.query(Message).filter(Message.conversation_id == conversation.id)
    if before is not None:
        query = query.filter(Message.id < before)
    rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    messages = list(reversed(rows[:limit]))

    data = conversation.to_dict()
    data["messages"] = [m.to_dict() for m in messages]
    data["has_more"] = has_more
    data["permissions"] = access.permissions()
    data["is_owner"] = access.is_owner
    return {"success": True, "data": data}


@router.put("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: int,
    request: ConversationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, _ = load_conversation(
        db, current_user, conversation_id, capability="can_reply",
        message="You do not have permission to edit this conversation",
    )
    fields = request.model_fields_set

    if "notes" in fields:
        conversation.notes = request.notes
    if "assigned_to" in fields:
        if request.assigned_to is not None:
            audience = AccessResolver.channel_audience(db, conversation.channel)
            if request.assigned_to not in audience:
                raise ValidationError("Assignee has no access to this channel")
        conversation.assigned_to = request.assigned_to

    db.commit()
    db.refresh(conversation)
    return {"success": True, "data": conversation.to_dict()}


@router.put("/conversations/{conversation_id}/status")
async def update_status(
    conversation_id: int,
    request: StatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    if request.status not in CONVERSATION_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(CONVERSATION_STATUSES)}")
    conversation, _ = load_conversation(
        db, current_user, conversation_id, capability="can_reply",
        message="You do not have permission to edit this conversation",
    )
    conversation.status = request.status
    db.commit()

    await notify_channel_audience(db, notifier, conversation.channel, "conversation_update", {
        "channel_id": conversation.channel_id,
        "conversation": {"id": conversation.id, "status": conversation.status},
    })
    return {"success": True, "data": {"id": conversation.id, "status": conversation.status}}


@router.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, _ = load_conversation(db, current_user, conversation_id)
    now = datetime.utcnow()
    db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.direction == MessageDirection.INCOMING.value,
        Message.is_read.is_(False),
    ).update({Message.is_read: True, Message.read_at: now}, synchronize_session=False)

    conversation.unread_count = 0
    if conversation.status == ConversationStatus.UNREAD.value:
        conversation.status = ConversationStatus.READ.value
    db.commit()
    return {"success": True, "data": {"id": conversation.id, "status": conversation.status, "unread_count": 0}}


@router.put("/conversations/{conversation_id}/tags")
async def set_tags(
    conversation_id: int,
    request: TagsUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, _ = load_conversation(
        db, current_user, conversation_id, capability="can_manage_tags",
        message="You do not have permission to manage tags",
    )
    owner_id = conversation.channel.user_id
    tag_ids = list(dict.fromkeys(request.tag_ids))
    tags = db.query(Tag).filter(Tag.id.in_(tag_ids), Tag.owner_id == owner_id).all() if tag_ids else []
    if len(tags) != len(tag_ids):
        raise ValidationError("Some tags do not exist or belong to another account")

    conversation.tags = tags
    db.commit()
    db.refresh(conversation)
    return {"success": True, "data": [t.to_brief() for t in conversation.tags]}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, access = load_conversation(db, current_user, conversation_id)
    if not access.is_owner:
        raise Forbidden("Only the channel owner can delete conversations")
    db.delete(conversation)
    db.commit()
    logger.info(f"User {current_user.id} deleted conversation {conversation_id}")
    return {"success": True, "message": "Conversation deleted"}


@router.post("/send")
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    conversation, _ = load_conversation(
        db, current_user, request.conversation_id, capability="can_reply", write=True,
        message="You do not have permission to reply in this channel",
    )
    channel = conversation.channel
    contact = conversation.contact

    platform_message, preview = build_outgoing_message(
        request.message_type,
        content=request.content,
        media_url=request.media_url,
        package_id=request.package_id,
        sticker_id=request.sticker_id,
    )

    try:
        await get_line_client(channel).push(contact.line_user_id, platform_message)
    except ChannelAPIError as e:
        raise PlatformError(f"Cannot send message: {e.message}")

    now = datetime.utcnow()
    message = Message(
        conversation_id=conversation.id,
        channel_id=channel.id,
        contact_id=contact.id,
        direction=MessageDirection.OUTGOING.value,
        message_type=request.message_type,
        content=request.content,
        media_url=request.media_url,
        sticker_id=request.sticker_id,
        package_id=request.package_id,
        sent_by=current_user.id,
        source_type=MessageSource.MANUAL.value,
        is_read=True,
        created_at=now,
    )
    db.add(message)
    conversation.touch(preview, now)
    db.commit()
    db.refresh(message)

    await notify_channel_audience(db, notifier, channel, "new_message", {
        "channel_id": channel.id,
        "conversation_id": conversation.id,
        "message": message.to_dict(),
    })
    return {"success": True, "message": "Message sent", "data": {"id": message.id}}


@router.post("/refresh-profile")
async def refresh_profile(
    request: RefreshProfileRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conversation, _ = load_conversation(db, current_user, request.conversation_id, write=True)
    contact = conversation.contact
    client = get_line_client(conversation.channel)

    try:
        if contact.source_type == SourceType.GROUP.value:
            summary = await client.get_group_summary(contact.line_user_id)
            contact.display_name = summary.get("groupName") or contact.display_name
            contact.picture_url = summary.get("pictureUrl") or contact.picture_url
            contact.member_count = await client.get_group_member_count(contact.line_user_id)
        elif contact.source_type == SourceType.USER.value:
            profile = await client.get_profile(contact.line_user_id)
            contact.display_name = profile.get("displayName") or contact.display_name
            contact.picture_url = profile.get("pictureUrl") or contact.picture_url
            contact.status_message = profile.get("statusMessage") or contact.status_message
    except ChannelAPIError as e:
        raise PlatformError(f"Cannot refresh profile: {e.message}")

    db.commit()
    db.refresh(contact)
    return {"success": True, "data": contact.to_dict()}
