"""
Health check and inbox overview numbers.
"""
from datetime import datetime, time

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from inboxhub.core.auth import get_current_user
from inboxhub.core.config import settings
from inboxhub.models.database import check_health, get_db
from inboxhub.models.entities import Conversation, Message, MessageDirection, User
from inboxhub.models.entities.conversation import CONVERSATION_STATUSES
from inboxhub.services.access_resolver import AccessResolver
from inboxhub.services.notifier import NotificationRegistry, get_notifier

router = APIRouter(tags=["Dashboard"])


@router.get("/health")
async def health(notifier: NotificationRegistry = Depends(get_notifier)):
    database = check_health()
    return {
        "success": database.get("status") == "healthy",
        "data": {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "database": database,
            "open_streams": notifier.connection_count(),
        },
    }


@router.get("/dashboard/stats")
async def dashboard_stats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    channels = AccessResolver.accessible_channels(db, current_user.id)
    channel_ids = [c.id for c in channels]
    by_status = {status: 0 for status in CONVERSATION_STATUSES}
    unread_total = 0
    messages_today = {"incoming": 0, "outgoing": 0}

    if channel_ids:
        rows = (
            db.query(Conversation.status, func.count(Conversation.id))
            .filter(Conversation.channel_id.in_(channel_ids))
            .group_by(Conversation.status)
            .all()
        )
        by_status.update(dict(rows))
        unread_total = (
            db.query(func.coalesce(func.sum(Conversation.unread_count), 0))
            .filter(Conversation.channel_id.in_(channel_ids))
            .scalar()
        )

        midnight = datetime.combine(datetime.utcnow().date(), time.min)
        rows = (
            db.query(Message.direction, func.count(Message.id))
            .filter(Message.channel_id.in_(channel_ids), Message.created_at >= midnight)
            .group_by(Message.direction)
            .all()
        )
        counts = dict(rows)
        messages_today["incoming"] = counts.get(MessageDirection.INCOMING.value, 0)
        messages_today["outgoing"] = counts.get(MessageDirection.OUTGOING.value, 0)

    return {
        "success": True,
        "data": {
            "channels": {
                "total": len(channels),
                "active": sum(1 for c in channels if c.is_active),
            },
            "conversations": {"total": sum(by_status.values()), "by_status": by_status},
            "unread_total": int(unread_total or 0),
            "messages_today": messages_today,
        },
    }
