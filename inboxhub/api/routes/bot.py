"""
Bot API for external chatbots, authenticated by the owner's bot API token
instead of a session.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from inboxhub.models.database import get_db
from inboxhub.models.entities import User
from inboxhub.services import bot_service
from inboxhub.services.bot_service import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from inboxhub.services.notifier import NotificationRegistry, get_notifier

router = APIRouter(tags=["Bot API"])


class BotSendRequest(BaseModel):
    channel_id: int
    line_user_id: Optional[str] = None
    group_id: Optional[str] = None
    room_id: Optional[str] = None
    message_type: str = "text"
    content: Optional[str] = None
    media_url: Optional[str] = None
    package_id: Optional[str] = None
    sticker_id: Optional[str] = None
    flex_content: Optional[Union[Dict[str, Any], str]] = None


class BotLogRequest(BaseModel):
    channel_id: Optional[int] = None
    line_channel_id: Optional[str] = None
    line_user_id: Optional[str] = None
    group_id: Optional[str] = None
    room_id: Optional[str] = None
    message_type: str = "text"
    content: Optional[str] = None
    flex_content: Optional[Union[Dict[str, Any], str]] = None
    media_url: Optional[str] = None
    direction: str = "outgoing"
    original_timestamp: Optional[int] = None  # milliseconds, from the platform event


def get_bot_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Dependency: the user owning the ``Authorization: Bearer`` bot API token."""
    auth_header = request.headers.get("authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    return bot_service.user_for_token(db, token)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@router.post("/bot/send")
async def bot_send(
    request: BotSendRequest,
    db: Session = Depends(get_db),
    bot_user: User = Depends(get_bot_user),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    message, conversation = await bot_service.send_message(
        db,
        notifier,
        bot_user,
        channel_id=request.channel_id,
        line_user_id=request.line_user_id,
        group_id=request.group_id,
        room_id=request.room_id,
        message_type=request.message_type,
        content=request.content,
        media_url=request.media_url,
        package_id=request.package_id,
        sticker_id=request.sticker_id,
        flex_content=request.flex_content,
    )
    return {
        "success": True,
        "message": "Message sent",
        "data": {"message_id": message.id, "conversation_id": conversation.id},
    }


@router.post("/bot-messages/log/{token}")
async def log_bot_message(
    token: str,
    request: BotLogRequest,
    db: Session = Depends(get_db),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    """Record a message a bot exchanged outside the inbox. The token is part of the URL for webhook relays."""
    bot_user = bot_service.user_for_token(db, token)
    message, conversation = await bot_service.log_message(
        db,
        notifier,
        bot_user,
        channel_id=request.channel_id,
        line_channel_id=request.line_channel_id,
        line_user_id=request.line_user_id,
        group_id=request.group_id,
        room_id=request.room_id,
        message_type=request.message_type,
        content=request.content,
        flex_content=request.flex_content,
        media_url=request.media_url,
        direction=request.direction,
        original_timestamp=request.original_timestamp,
    )
    return {
        "success": True,
        "data": {
            "message_id": message.id,
            "conversation_id": conversation.id,
            "created_at": message.created_at.isoformat(),
        },
    }


@router.get("/bot-messages/log/{token}")
async def bot_message_history(
    token: str,
    conversation_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    line_user_id: Optional[str] = None,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    before: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    bot_user = bot_service.user_for_token(db, token)
    conversation, messages = bot_service.message_history(
        db,
        bot_user,
        conversation_id=conversation_id,
        channel_id=channel_id,
        line_user_id=line_user_id,
        limit=limit,
        before=_naive_utc(before),
    )
    return {
        "success": True,
        "data": {
            "conversation_id": conversation.id,
            "messages": [m.to_dict() for m in messages],
        },
    }
