"""
Inbound webhooks from the messaging platform.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from inboxhub.core.errors import NotFound, ValidationError
from inboxhub.models.database import get_db
from inboxhub.models.entities import Channel, ChannelStatus
from inboxhub.services import webhook_service
from inboxhub.services.channels.line import validate_signature
from inboxhub.services.notifier import NotificationRegistry, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhooks"])


@router.post("/{platform_channel_id}")
async def line_webhook(
    platform_channel_id: str,
    request: Request,
    db: Session = Depends(get_db),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    """
    Receive LINE webhook events for one channel.

    A bad signature is logged but the events are still processed; forwarded
    and LIFF-share traffic arrives signed with another channel's secret.
    """
    body = await request.body()

    header_channel_id = request.headers.get("x-line-channel-id")
    if header_channel_id and header_channel_id != platform_channel_id:
        logger.info(
            f"[Webhook] Skipped: path channel {platform_channel_id} != header channel {header_channel_id}"
        )
        return {"success": True, "message": "Skipped - channel mismatch"}

    channel = db.query(Channel).filter(
        Channel.channel_id == platform_channel_id,
        Channel.status == ChannelStatus.ACTIVE.value,
    ).first()
    if not channel:
        logger.warning(f"[Webhook] No active channel for {platform_channel_id}")
        raise NotFound("Channel not found")

    signature = request.headers.get("x-line-signature")
    if signature and not validate_signature(body, signature, channel.channel_secret):
        logger.warning(f"[Webhook] Invalid signature for channel {channel.id}, processing anyway")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Invalid JSON body")

    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    events = payload.get("events") or []
    if not isinstance(events, list):
        raise ValidationError("events must be an array")
    failures = await webhook_service.process_events(db, notifier, channel, events)
    if failures:
        logger.warning(f"[Webhook] {failures}/{len(events)} events failed on channel {channel.id}")
    return {"success": True}
