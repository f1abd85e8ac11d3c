"""
Bot API: token-authenticated sends and message logging for external bots.

An owner generates one API token in settings. A bot holding it can push
messages through the channels the owner may reply on, and log messages it
sent by other means so the shared inbox shows the whole exchange. Access is
resolved for the token's user exactly as for a logged-in session.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from inboxhub.core.errors import NotFound, PlatformError, Unauthorized, ValidationError
from inboxhub.core.security import generate_token
from inboxhub.models.entities import (
    Channel,
    Conversation,
    ConversationStatus,
    FollowStatus,
    LineUser,
    Message,
    MessageDirection,
    MessageSource,
    SourceType,
    User,
)
from inboxhub.models.entities.channel import LINE_USER_ID_PATTERN
from inboxhub.services.access_resolver import AccessResolver
from inboxhub.services.channels import ChannelAPIError
from inboxhub.services.channels.line import (
    LineClient,
    build_outgoing_message,
    convert_flex,
    get_line_client,
    preview_for,
)
from inboxhub.services.notifier import NotificationRegistry, notify_channel_audience
from inboxhub.services.webhook_service import get_or_create_conversation

logger = logging.getLogger(__name__)

BOT_TOKEN_PREFIX = "ibx_"
UNKNOWN_CONTACT_NAME = "Unknown User"
FLEX_PLACEHOLDER = "[Flex Message]"

# A logged reply sorts just after the message it answers
LOG_ORDER_OFFSET = timedelta(milliseconds=500)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200


# ── tokens ──────────────────────────────────────────────────────────────────

def generate_bot_token(user_id: int) -> str:
    suffix = hashlib.sha256(str(user_id).encode()).hexdigest()[:8]
    return f"{BOT_TOKEN_PREFIX}{generate_token(24)}{suffix}"


def mask_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    if len(token) <= 12:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


def user_for_token(db: Session, token: Optional[str]) -> User:
    user = db.query(User).filter(User.bot_api_token == token).first() if token else None
    if not user or not user.is_active:
        raise Unauthorized("Invalid API token")
    return user


def regenerate_token(db: Session, user: User) -> str:
    user.bot_api_token = generate_bot_token(user.id)
    db.commit()
    logger.info(f"[Bot] API token regenerated for user {user.id}")
    return user.bot_api_token


def revoke_token(db: Session, user: User) -> None:
    user.bot_api_token = None
    db.commit()
    logger.info(f"[Bot] API token revoked for user {user.id}")


# ── contacts ────────────────────────────────────────────────────────────────

def parse_target(
    line_user_id: Optional[str] = None,
    group_id: Optional[str] = None,
    room_id: Optional[str] = None,
) -> Tuple[str, str]:
    """``(platform id, source type)`` of the chat a bot addresses."""
    if group_id:
        return group_id, SourceType.GROUP.value
    if room_id:
        return room_id, SourceType.ROOM.value
    if not line_user_id:
        raise ValidationError("line_user_id, group_id or room_id is required")
    if not LINE_USER_ID_PATTERN.match(line_user_id):
        raise ValidationError("Invalid line_user_id")
    return line_user_id, SourceType.USER.value


async def get_or_create_contact(
    db: Session, client: LineClient, channel: Channel, target_id: str, source_type: str
) -> LineUser:
    contact = db.query(LineUser).filter(
        LineUser.channel_id == channel.id,
        LineUser.line_user_id == target_id,
    ).first()
    if contact:
        return contact

    contact = LineUser(channel_id=channel.id, line_user_id=target_id, source_type=source_type)
    if source_type == SourceType.USER.value:
        profile = {}
        try:
            profile = await client.get_profile(target_id)
        except ChannelAPIError as e:
            logger.warning(f"[Bot] Profile lookup failed for {target_id}: {e.message}")
        contact.display_name = profile.get("displayName") or UNKNOWN_CONTACT_NAME
        contact.picture_url = profile.get("pictureUrl")
        contact.follow_status = (
            FollowStatus.FOLLOWING.value if profile.get("displayName") else FollowStatus.UNKNOWN.value
        )
    else:
        contact.group_id = target_id if source_type == SourceType.GROUP.value else None
        contact.room_id = target_id if source_type == SourceType.ROOM.value else None
        contact.display_name = f"{source_type.title()} {target_id[:8]}..."
        contact.follow_status = FollowStatus.FOLLOWING.value
    db.add(contact)
    db.flush()
    logger.info(f"[Bot] Created contact {contact.id} ({source_type}) on channel {channel.id}")
    return contact


async def _notify(db: Session, notifier: NotificationRegistry, channel: Channel,
                  conversation: Conversation, message: Message) -> None:
    await notify_channel_audience(db, notifier, channel, "new_message", {
        "channel_id": channel.id,
        "conversation_id": conversation.id,
        "message": message.to_dict(),
    })
    await notify_channel_audience(db, notifier, channel, "conversation_update", {
        "channel_id": channel.id,
        "conversation": {
            "id": conversation.id,
            "status": conversation.status,
            "last_message_preview": conversation.last_message_preview,
            "last_message_at": conversation.last_message_at.isoformat() if conversation.last_message_at else None,
            "unread_count": conversation.unread_count,
        },
    })


# ── send ────────────────────────────────────────────────────────────────────

def _outgoing(
    message_type: str,
    content: Optional[str],
    media_url: Optional[str],
    package_id: Optional[str],
    sticker_id: Optional[str],
    flex_content: Optional[Union[str, Dict[str, Any]]],
) -> Tuple[Dict[str, Any], str]:
    if message_type == "flex":
        if not flex_content:
            raise ValidationError("flex_content is required")
        return convert_flex(flex_content, content), preview_for("flex")
    return build_outgoing_message(
        message_type, content=content, media_url=media_url, package_id=package_id, sticker_id=sticker_id,
    )


async def send_message(
    db: Session,
    notifier: NotificationRegistry,
    user: User,
    channel_id: int,
    line_user_id: Optional[str] = None,
    group_id: Optional[str] = None,
    room_id: Optional[str] = None,
    message_type: str = "text",
    content: Optional[str] = None,
    media_url: Optional[str] = None,
    package_id: Optional[str] = None,
    sticker_id: Optional[str] = None,
    flex_content: Optional[Union[str, Dict[str, Any]]] = None,
) -> Tuple[Message, Conversation]:
    """Push one message to a contact of the channel and record it as a bot message."""
    access = AccessResolver.get_channel(
        db, user.id, channel_id, capability="can_reply", write=True,
        message="You do not have permission to reply in this channel",
    )
    channel = access.channel
    target_id, source_type = parse_target(line_user_id, group_id, room_id)
    platform_message, preview = _outgoing(
        message_type, content, media_url, package_id, sticker_id, flex_content,
    )

    client = get_line_client(channel)
    contact = await get_or_create_contact(db, client, channel, target_id, source_type)
    conversation = get_or_create_conversation(db, channel, contact, status=ConversationStatus.READ.value)

    try:
        await client.push(target_id, platform_message)
    except ChannelAPIError as e:
        db.rollback()
        raise PlatformError(f"Cannot send message: {e.message}")

    now = datetime.utcnow()
    message = Message(
        conversation_id=conversation.id,
        channel_id=channel.id,
        contact_id=contact.id,
        direction=MessageDirection.OUTGOING.value,
        message_type=message_type,
        content=content if message_type != "flex" else (content or FLEX_PLACEHOLDER),
        flex_content=platform_message if message_type == "flex" else None,
        media_url=media_url,
        sticker_id=sticker_id,
        package_id=package_id,
        sent_by=user.id,
        source_type=MessageSource.BOT_API.value,
        is_read=True,
        created_at=now,
    )
    db.add(message)
    conversation.touch(preview, now)
    db.commit()
    db.refresh(message)
    db.refresh(conversation)
    logger.info(f"[Bot] User {user.id} sent {message_type} to {target_id} on channel {channel.id}")

    await _notify(db, notifier, channel, conversation, message)
    return message, conversation


# ── log ─────────────────────────────────────────────────────────────────────

def _find_channel(
    db: Session,
    user: User,
    channel_id: Optional[int],
    line_channel_id: Optional[str],
    target_id: str,
) -> Channel:
    """The channel a logged message belongs to, among those the user can reach."""
    if channel_id is not None:
        return AccessResolver.get_channel(db, user.id, channel_id, capability="can_reply").channel

    accessible = AccessResolver.accessible_channel_ids(db, user.id)
    channel = None
    if line_channel_id:
        channel = db.query(Channel).filter(
            Channel.channel_id == line_channel_id,
            Channel.id.in_(accessible),
        ).first()
    if channel is None:
        contact = db.query(LineUser).filter(
            LineUser.line_user_id == target_id,
            LineUser.channel_id.in_(accessible),
        ).first()
        channel = contact.channel if contact else None
    if channel is None:
        raise NotFound("Channel not found for this target")
    AccessResolver.require(db, user.id, channel, capability="can_reply")
    return channel


def _flex_object(flex_content: Optional[Union[str, Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    if not flex_content or isinstance(flex_content, dict):
        return flex_content or None
    try:
        parsed = json.loads(flex_content)
    except ValueError as e:
        raise ValidationError(f"Flex JSON error: {e}")
    if not isinstance(parsed, dict):
        raise ValidationError("Flex JSON error: expected an object")
    return parsed


def _log_time(db: Session, conversation: Conversation, original_timestamp: Optional[int]) -> datetime:
    if original_timestamp:
        return datetime.utcfromtimestamp(original_timestamp / 1000.0) + LOG_ORDER_OFFSET
    now = datetime.utcnow()
    last = db.query(Message.created_at).filter(
        Message.conversation_id == conversation.id
    ).order_by(Message.created_at.desc()).first()
    if last and last[0] and last[0] + LOG_ORDER_OFFSET > now:
        return last[0] + LOG_ORDER_OFFSET
    return now


async def log_message(
    db: Session,
    notifier: NotificationRegistry,
    user: User,
    channel_id: Optional[int] = None,
    line_channel_id: Optional[str] = None,
    line_user_id: Optional[str] = None,
    group_id: Optional[str] = None,
    room_id: Optional[str] = None,
    message_type: str = "text",
    content: Optional[str] = None,
    flex_content: Optional[Union[str, Dict[str, Any]]] = None,
    media_url: Optional[str] = None,
    direction: str = MessageDirection.OUTGOING.value,
    original_timestamp: Optional[int] = None,
) -> Tuple[Message, Conversation]:
    """
    Record a message the bot exchanged outside the inbox.

    Nothing is sent to the platform. An incoming log counts as unread like a
    webhook message; an outgoing one is stored as already read.
    """
    target_id, source_type = parse_target(line_user_id, group_id, room_id)
    if not content and not flex_content:
        raise ValidationError("content or flex_content is required")
    if direction not in (MessageDirection.INCOMING.value, MessageDirection.OUTGOING.value):
        raise ValidationError("direction must be incoming or outgoing")

    channel = _find_channel(db, user, channel_id, line_channel_id, target_id)
    contact = await get_or_create_contact(db, get_line_client(channel), channel, target_id, source_type)
    if contact.source_type == SourceType.USER.value and contact.follow_status in (
        FollowStatus.UNFOLLOWED.value, FollowStatus.BLOCKED.value,
    ):
        raise ValidationError("Cannot log message: the contact has unfollowed or blocked the channel")
    conversation = get_or_create_conversation(db, channel, contact, status=ConversationStatus.READ.value)

    outgoing = direction == MessageDirection.OUTGOING.value
    at = _log_time(db, conversation, original_timestamp)
    message = Message(
        conversation_id=conversation.id,
        channel_id=channel.id,
        contact_id=contact.id,
        direction=direction,
        message_type=message_type,
        content=content or FLEX_PLACEHOLDER,
        flex_content=_flex_object(flex_content),
        media_url=media_url,
        sent_by=user.id if outgoing else None,
        source_type=MessageSource.BOT_REPLY.value,
        is_read=outgoing,
        created_at=at,
    )
    db.add(message)

    if conversation.last_message_at is None or at >= conversation.last_message_at:
        conversation.touch(preview_for(message_type, content), at)
    if not outgoing:
        conversation.unread_count = (conversation.unread_count or 0) + 1
        conversation.status = ConversationStatus.UNREAD.value
    db.commit()
    db.refresh(message)
    db.refresh(conversation)
    logger.info(f"[Bot] Logged {direction} {message_type} for {target_id} on channel {channel.id}")

    await _notify(db, notifier, channel, conversation, message)
    return message, conversation


def message_history(
    db: Session,
    user: User,
    conversation_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    line_user_id: Optional[str] = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    before: Optional[datetime] = None,
) -> Tuple[Conversation, List[Message]]:
    """Latest messages of one conversation, oldest first."""
    accessible = AccessResolver.accessible_channel_ids(db, user.id)
    query = db.query(Conversation).filter(Conversation.channel_id.in_(accessible))
    if conversation_id is not None:
        conversation = query.filter(Conversation.id == conversation_id).first()
    elif line_user_id:
        query = query.join(LineUser, LineUser.id == Conversation.contact_id).filter(
            LineUser.line_user_id == line_user_id
        )
        if channel_id is not None:
            query = query.filter(Conversation.channel_id == channel_id)
        conversation = query.order_by(Conversation.last_message_at.desc()).first()
    else:
        raise ValidationError("conversation_id or line_user_id is required")
    if conversation is None:
        raise NotFound("Conversation not found")

    limit = max(1, min(limit or DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT))
    messages = db.query(Message).filter(Message.conversation_id == conversation.id)
    if before is not None:
        messages = messages.filter(Message.created_at < before)
    rows = messages.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    return conversation, list(reversed(rows))
