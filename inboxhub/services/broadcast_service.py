"""
Broadcast dispatch.

draft/scheduled -> sending -> completed | failed

The move to ``sending`` is a single conditional UPDATE, so of two concurrent
dispatch requests for the same broadcast exactly one proceeds. Recipients are
attempted one by one; a failed push is recorded on its recipient row and the
batch continues. Nothing is retried.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from inboxhub.core.config import settings
from inboxhub.core.errors import Conflict, ValidationError
from inboxhub.models.entities import (
    Broadcast,
    BroadcastRecipient,
    BroadcastStatus,
    Conversation,
    FollowStatus,
    LineUser,
    RecipientStatus,
    SourceType,
    conversation_tags,
)
from inboxhub.models.entities.broadcast import DISPATCHABLE_STATUSES
from inboxhub.models.entities.channel import LINE_USER_ID_PATTERN
from inboxhub.services.channels import ChannelAPIError
from inboxhub.services.channels.line import (
    MAX_MESSAGES_PER_REQUEST,
    convert_flex,
    convert_message_input,
    get_line_client,
)
from inboxhub.services.notifier import NotificationRegistry, notify_channel_audience

logger = logging.getLogger(__name__)

TARGET_TYPES = ("all", "tagged")
BROADCAST_MESSAGE_TYPES = ("text", "image", "video", "flex")

# Pause after this many pushes to stay under the platform rate limit
BATCH_SIZE = 100


def validate_message_inputs(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not messages:
        raise ValidationError("At least one message is required")
    if len(messages) > MAX_MESSAGES_PER_REQUEST:
        raise ValidationError(f"At most {MAX_MESSAGES_PER_REQUEST} messages per broadcast")
    for item in messages:
        convert_message_input(item)
    return messages


def build_platform_messages(broadcast: Broadcast) -> List[Dict[str, Any]]:
    """Platform message objects for one broadcast; raises ValidationError on bad content."""
    if broadcast.messages:
        return [convert_message_input(item) for item in validate_message_inputs(broadcast.messages)]

    message_type = broadcast.message_type or "text"
    if message_type == "text":
        if not broadcast.content:
            raise ValidationError("Message text is required")
        return [{"type": "text", "text": broadcast.content}]
    if message_type == "image":
        return [convert_message_input({"type": "image", "content": broadcast.media_url})]
    if message_type == "video":
        if not broadcast.media_url or not broadcast.media_url.startswith("https://"):
            raise ValidationError("Video URL must use HTTPS")
        preview = broadcast.media_url.rsplit(".", 1)[0] + ".jpg"
        return [{"type": "video", "originalContentUrl": broadcast.media_url, "previewImageUrl": preview}]
    if message_type == "flex":
        if not broadcast.flex_content:
            raise ValidationError("Flex content is required")
        return [convert_flex(broadcast.flex_content, broadcast.content)]
    raise ValidationError(f"Unsupported message type: {message_type}")


def eligible_contacts(
    db: Session,
    channel_id: int,
    target_type: str = "all",
    target_tags: Optional[List[int]] = None,
) -> List[LineUser]:
    """
    Direct-user contacts of the channel that can still be reached:
    not unfollowed/blocked/spam and with a well-formed platform id.
    """
    query = db.query(LineUser).filter(
        LineUser.channel_id == channel_id,
        LineUser.source_type == SourceType.USER.value,
        LineUser.follow_status.notin_([FollowStatus.UNFOLLOWED.value, FollowStatus.BLOCKED.value]),
        LineUser.is_blocked.is_(False),
        LineUser.is_spam.is_(False),
    )

    if target_type == "tagged":
        if not target_tags:
            return []
        tagged_contacts = db.query(Conversation.contact_id).join(
            conversation_tags, conversation_tags.c.conversation_id == Conversation.id
        ).filter(
            Conversation.channel_id == channel_id,
            conversation_tags.c.tag_id.in_(target_tags),
        )
        query = query.filter(LineUser.id.in_(tagged_contacts))

    contacts = query.order_by(LineUser.id).all()
    return [c for c in contacts if LINE_USER_ID_PATTERN.match(c.line_user_id or "")]


def claim_for_dispatch(db: Session, broadcast_id: int) -> bool:
    """Atomically move a draft/scheduled broadcast to ``sending``. False if someone else got there first."""
    now = datetime.utcnow()
    result = db.execute(
        update(Broadcast)
        .where(Broadcast.id == broadcast_id, Broadcast.status.in_(DISPATCHABLE_STATUSES))
        .values(status=BroadcastStatus.SENDING.value, sent_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


async def dispatch(
    db: Session,
    broadcast: Broadcast,
    sent_by: Optional[int] = None,
    notifier: Optional[NotificationRegistry] = None,
) -> Broadcast:
    """
    Send ``broadcast`` to its eligible recipients.

    Access checks are the caller's job. Raises Conflict when the broadcast
    is not (or no longer) dispatchable.
    """
    if not broadcast.is_dispatchable:
        raise Conflict(f"Broadcast is already {broadcast.status}")

    messages = build_platform_messages(broadcast)

    if not claim_for_dispatch(db, broadcast.id):
        raise Conflict("Broadcast is already being sent")
    db.refresh(broadcast)

    channel = broadcast.channel
    contacts = eligible_contacts(db, channel.id, broadcast.target_type, broadcast.target_tags)
    logger.info(
        f"[Broadcast] {broadcast.id} dispatching to {len(contacts)} recipients on channel {channel.id}"
    )

    recipients = []
    for contact in contacts:
        recipient = BroadcastRecipient(
            broadcast_id=broadcast.id,
            channel_id=channel.id,
            contact_id=contact.id,
            line_user_id=contact.line_user_id,
            display_name=contact.display_name,
            picture_url=contact.picture_url,
            status=RecipientStatus.PENDING.value,
        )
        db.add(recipient)
        recipients.append(recipient)
    broadcast.target_count = len(recipients)
    broadcast.sent_count = 0
    broadcast.failed_count = 0
    db.commit()

    client = get_line_client(channel)
    delay = settings.BROADCAST_BATCH_DELAY_MS / 1000.0

    for index, recipient in enumerate(recipients, start=1):
        try:
            await client.push(recipient.line_user_id, messages)
            recipient.status = RecipientStatus.SENT.value
            recipient.sent_at = datetime.utcnow()
            broadcast.sent_count += 1
        except ChannelAPIError as e:
            recipient.status = RecipientStatus.FAILED.value
            recipient.error_message = e.message
            broadcast.failed_count += 1
            logger.warning(f"[Broadcast] {broadcast.id} -> {recipient.line_user_id} failed: {e.message}")
        except Exception as e:
            recipient.status = RecipientStatus.FAILED.value
            recipient.error_message = str(e) or e.__class__.__name__
            broadcast.failed_count += 1
            logger.exception(f"[Broadcast] {broadcast.id} -> {recipient.line_user_id} crashed")
        db.commit()

        if delay and index % BATCH_SIZE == 0:
            await asyncio.sleep(delay)

    if broadcast.sent_count > 0 or broadcast.target_count == 0:
        broadcast.status = BroadcastStatus.COMPLETED.value
    else:
        broadcast.status = BroadcastStatus.FAILED.value
    broadcast.completed_at = datetime.utcnow()
    db.commit()
    db.refresh(broadcast)

    logger.info(
        f"[Broadcast] {broadcast.id} {broadcast.status}: "
        f"{broadcast.sent_count} sent, {broadcast.failed_count} failed of {broadcast.target_count}"
    )

    if notifier is not None:
        await notify_channel_audience(db, notifier, channel, "broadcast_completed", {
            "broadcast_id": broadcast.id,
            "channel_id": channel.id,
            "status": broadcast.status,
            "target_count": broadcast.target_count,
            "sent_count": broadcast.sent_count,
            "failed_count": broadcast.failed_count,
            "sent_by": sent_by,
        })
    return broadcast

