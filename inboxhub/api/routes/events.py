"""
Server-sent events: one long-lived stream per open browser tab.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from inboxhub.core.auth import get_stream_payload
from inboxhub.core.config import settings
from inboxhub.services.notifier import HEARTBEAT_FRAME, NotificationRegistry, format_event, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def stream_events(
    request: Request,
    notifier: NotificationRegistry,
    user_id: int,
    heartbeat: float,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client goes away; the handle is always unregistered."""
    queue = notifier.register(user_id)
    logger.info(f"[SSE] User {user_id} connected")
    try:
        yield format_event({"type": "connected", "userId": user_id})
        while True:
            if await request.is_disconnected():
                break
            try:
                event: Dict[str, Any] = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            yield format_event(event)
    finally:
        notifier.unregister(user_id, queue)
        logger.info(f"[SSE] User {user_id} disconnected")


@router.get("/events")
async def events(
    request: Request,
    payload: Dict[str, Any] = Depends(get_stream_payload),
    notifier: NotificationRegistry = Depends(get_notifier),
):
    user_id = payload["user_id"]
    return StreamingResponse(
        stream_events(request, notifier, user_id, settings.SSE_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
