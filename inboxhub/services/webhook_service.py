"""
Inbound webhook processing for LINE channels.

Each event is handled on its own; a failing event is logged and the rest of
the batch still runs. Profile lookups and media downloads are best-effort.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

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
)
from inboxhub.services import storage_service
from inboxhub.services.channels import ChannelAPIError
from inboxhub.services.channels.line import LineClient, get_line_client, preview_for
from inboxhub.services.notifier import NotificationRegistry, notify_channel_audience

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video", "audio", "file")
MEDIA_EXTENSIONS = {"image": ".jpg", "video": ".mp4", "audio": ".m4a", "file": ".bin"}


def _event_time(event: Dict[str, Any]) -> datetime:
    timestamp = event.get("timestamp")
    if timestamp:
        return datetime.utcfromtimestamp(timestamp / 1000.0)
    return datetime.utcnow()


async def _get_or_create_user_contact(
    db: Session, client: LineClient, channel: Channel, line_user_id: str
) -> LineUser:
    contact = db.query(LineUser).filter(
        LineUser.channel_id == channel.id,
        LineUser.line_user_id == line_user_id,
    ).first()

    if contact and contact.display_name:
        # Someone who writes to us is following again
        contact.follow_status = FollowStatus.FOLLOWING.value
        return contact

    profile = {}
    try:
        profile = await client.get_profile(line_user_id)
    except ChannelAPIError as e:
        logger.warning(f"[Webhook] Profile lookup failed for {line_user_id}: {e.message}")

    if contact is None:
        contact = LineUser(
            channel_id=channel.id,
            line_user_id=line_user_id,
            source_type=SourceType.USER.value,
        )
        db.add(contact)

    contact.display_name = profile.get("displayName") or contact.display_name
    contact.picture_url = profile.get("pictureUrl") or contact.picture_url
    contact.status_message = profile.get("statusMessage") or contact.status_message
    contact.language = profile.get("language") or contact.language or "th"
    contact.follow_status = (
        FollowStatus.FOLLOWING.value if profile.get("displayName") else FollowStatus.UNKNOWN.value
    )
    db.flush()
    return contact


async def _get_or_create_group_contact(
    db: Session, client: LineClient, channel: Channel, target_id: str, source_type: str
) -> LineUser:
    contact = db.query(LineUser).filter(
        LineUser.channel_id == channel.id,
        LineUser.line_user_id == target_id,
    ).first()
    if contact and contact.source_type == source_type:
        return contact

    summary, member_count = {}, 0
    if source_type == SourceType.GROUP.value:
        try:
            summary = await client.get_group_summary(target_id)
            member_count = await client.get_group_member_count(target_id)
        except ChannelAPIError as e:
            logger.warning(f"[Webhook] Group info lookup failed for {target_id}: {e.message}")

    if contact is None:
        contact = LineUser(channel_id=channel.id, line_user_id=target_id)
        db.add(contact)

    contact.source_type = source_type
    contact.group_id = target_id if source_type == SourceType.GROUP.value else None
    contact.room_id = target_id if source_type == SourceType.ROOM.value else None
    contact.display_name = summary.get("groupName") or contact.display_name or f"{source_type.title()} {target_id[:8]}..."
    contact.picture_url = summary.get("pictureUrl") or contact.picture_url
    contact.member_count = member_count or contact.member_count or 0
    contact.follow_status = FollowStatus.FOLLOWING.value
    db.flush()
    return contact


async def _sender_info(client: LineClient, source: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    user_id = source.get("userId")
    if not user_id:
        return None
    info = {"user_id": user_id, "display_name": None, "picture_url": None}
    try:
        if source.get("type") == SourceType.GROUP.value:
            profile = await client.get_group_member_profile(source["groupId"], user_id)
        else:
            profile = await client.get_room_member_profile(source["roomId"], user_id)
        info["display_name"] = profile.get("displayName")
        info["picture_url"] = profile.get("pictureUrl")
    except ChannelAPIError as e:
        logger.warning(f"[Webhook] Sender profile lookup failed for {user_id}: {e.message}")
    return info


def get_or_create_conversation(
    db: Session, channel: Channel, contact: LineUser, status: str = ConversationStatus.UNREAD.value
) -> Conversation:
    conversation = db.query(Conversation).filter(
        Conversation.channel_id == channel.id,
        Conversation.contact_id == contact.id,
    ).first()
    if conversation is None:
        conversation = Conversation(
            channel_id=channel.id,
            contact_id=contact.id,
            status=status,
            unread_count=0,
        )
        db.add(conversation)
        db.flush()
    return conversation


async def _message_fields(client: LineClient, message: Dict[str, Any]) -> Dict[str, Any]:
    message_type = message.get("type", "text")
    fields = {"message_type": message_type, "content": None, "media_url": None,
              "sticker_id": None, "package_id": None, "flex_content": None}

    if message_type == "text":
        fields["content"] = message.get("text")
    elif message_type in MEDIA_TYPES:
        try:
            data = await client.get_content(message["id"])
            fields["media_url"] = await storage_service.save_bytes(
                data, MEDIA_EXTENSIONS[message_type], subdir="line-media"
            )
        except ChannelAPIError as e:
            logger.warning(f"[Webhook] Media download failed for message {message.get('id')}: {e.message}")
            fields["media_url"] = f"{client.data_url}/message/{message.get('id')}/content"
        if message_type == "file":
            fields["content"] = message.get("fileName")
    elif message_type == "sticker":
        fields["sticker_id"] = message.get("stickerId")
        fields["package_id"] = message.get("packageId")
    elif message_type == "location":
        fields["content"] = json.dumps({
            "title": message.get("title"),
            "address": message.get("address"),
            "latitude": message.get("latitude"),
            "longitude": message.get("longitude"),
        }, ensure_ascii=False)
    elif message_type == "flex":
        fields["flex_content"] = message.get("contents") or message
        fields["content"] = message.get("altText") or "[Flex Message]"
    elif message_type == "template":
        fields["flex_content"] = message.get("template") or message
        fields["content"] = message.get("altText") or "[Template Message]"
    else:
        fields["content"] = f"[{message_type}]"
    return fields


async def handle_message_event(
    db: Session, notifier: NotificationRegistry, channel: Channel, client: LineClient, event: Dict[str, Any]
) -> Optional[Tuple[Conversation, Message]]:
    source = event.get("source") or {}
    source_type = source.get("type") or SourceType.USER.value
    message = event.get("message") or {}

    sender_info = None
    if source_type in (SourceType.GROUP.value, SourceType.ROOM.value):
        target_id = source.get("groupId") or source.get("roomId")
        if not target_id:
            logger.warning("[Webhook] Group/room event without a target id, skipped")
            return None
        contact = await _get_or_create_group_contact(db, client, channel, target_id, source_type)
        sender_info = await _sender_info(client, source)
    else:
        line_user_id = source.get("userId")
        if not line_user_id:
            logger.warning("[Webhook] Message event without userId, skipped")
            return None
        contact = await _get_or_create_user_contact(db, client, channel, line_user_id)

    conversation = get_or_create_conversation(db, channel, contact)
    at = _event_time(event)
    fields = await _message_fields(client, message)

    stored = Message(
        conversation_id=conversation.id,
        channel_id=channel.id,
        contact_id=contact.id,
        platform_message_id=message.get("id"),
        direction=MessageDirection.INCOMING.value,
        reply_token=event.get("replyToken"),
        sender_info=sender_info,
        source_type=MessageSource.MANUAL.value,
        created_at=at,
        **fields,
    )
    db.add(stored)

    preview = preview_for(fields["message_type"], fields["content"])
    if sender_info and sender_info.get("display_name"):
        preview = f"{sender_info['display_name']}: {preview}"
    conversation.touch(preview, at)
    conversation.status = ConversationStatus.UNREAD.value
    conversation.unread_count = (conversation.unread_count or 0) + 1
    contact.last_message_at = at
    db.commit()
    db.refresh(conversation)

    await notify_channel_audience(db, notifier, channel, "new_message", {
        "channel_id": channel.id,
        "conversation_id": conversation.id,
        "message": stored.to_dict(),
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
    return conversation, stored


async def handle_follow_event(db: Session, channel: Channel, client: LineClient, event: Dict[str, Any], following: bool):
    line_user_id = (event.get("source") or {}).get("userId")
    if not line_user_id:
        return
    if following:
        contact = await _get_or_create_user_contact(db, client, channel, line_user_id)
        contact.follow_status = FollowStatus.FOLLOWING.value
    else:
        contact = db.query(LineUser).filter(
            LineUser.channel_id == channel.id,
            LineUser.line_user_id == line_user_id,
        ).first()
        if contact is None:
            return
        contact.follow_status = FollowStatus.UNFOLLOWED.value
    db.commit()
    logger.info(f"[Webhook] {line_user_id} {'followed' if following else 'unfollowed'} channel {channel.id}")


async def process_events(
    db: Session, notifier: NotificationRegistry, channel: Channel, events: List[Dict[str, Any]]
) -> int:
    """Handle a webhook batch. Returns the number of events that failed."""
    client = get_line_client(channel)
    failures = 0
    for event in events:
        event_type = event.get("type")
        try:
            if event_type == "message":
                await handle_message_event(db, notifier, channel, client, event)
            elif event_type == "follow":
                await handle_follow_event(db, channel, client, event, following=True)
            elif event_type == "unfollow":
                await handle_follow_event(db, channel, client, event, following=False)
            else:
                logger.debug(f"[Webhook] Ignoring event type {event_type}")
        except Exception:
            failures += 1
            db.rollback()
            logger.exception(f"[Webhook] Failed to handle {event_type} event on channel {channel.id}")
    return failures
