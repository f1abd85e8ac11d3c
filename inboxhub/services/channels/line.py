import base64
import hashlib
import hmac
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from inboxhub.core.config import settings
from inboxhub.core.errors import ValidationError
from inboxhub.models.entities import Channel
from inboxhub.services.channels.base import BaseChannelClient, ChannelAPIError

logger = logging.getLogger(__name__)

# LINE accepts at most five message objects per push request
MAX_MESSAGES_PER_REQUEST = 5

OUTGOING_TYPES = ("text", "image", "video", "audio", "sticker")
AUDIO_DEFAULT_DURATION_MS = 60000

PREVIEWS = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "sticker": "[Sticker]",
    "file": "[File]",
    "location": "[Location]",
    "flex": "[Flex]",
    "template": "[Template]",
}


class LineAPIError(ChannelAPIError):
    pass


class LineClient(BaseChannelClient):
    """
    Client for the LINE Messaging API.
    """

    def __init__(self, channel: Channel, timeout: Optional[float] = None):
        super().__init__(channel)
        self.base_url = settings.LINE_API_BASE_URL.rstrip("/")
        self.data_url = settings.LINE_DATA_API_BASE_URL.rstrip("/")
        self.timeout = timeout or settings.LINE_API_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.channel.channel_access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, payload: Optional[dict] = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method, url, headers=self._headers(), json=payload, timeout=self.timeout
                )
        except httpx.TimeoutException:
            logger.error(f"[LINE API] {method} {url} timed out after {self.timeout}s")
            raise LineAPIError(f"Request timeout after {int(self.timeout)} seconds")
        except httpx.HTTPError as e:
            logger.error(f"[LINE API] {method} {url} failed: {e}")
            raise LineAPIError(str(e) or "Connection error")

        if response.status_code >= 400:
            try:
                details = response.json()
            except ValueError:
                details = {}
            message = details.get("message") if isinstance(details, dict) else None
            logger.error(f"[LINE API] {method} {url} -> {response.status_code}: {response.text}")
            raise LineAPIError(message or "LINE API Error", response.status_code, details)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {}

    # ── sending ─────────────────────────────────────────────────────────────

    async def push(self, to: str, messages: Union[Dict[str, Any], List[Dict[str, Any]]]) -> Dict[str, Any]:
        messages = messages if isinstance(messages, list) else [messages]
        response = await self._request(
            "POST", f"{self.base_url}/message/push", {"to": to, "messages": messages}
        )
        return self._json(response)

    # ── reading ─────────────────────────────────────────────────────────────

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/profile/{user_id}")
        return self._json(response)

    async def get_group_member_profile(self, group_id: str, user_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/group/{group_id}/member/{user_id}")
        return self._json(response)

    async def get_room_member_profile(self, room_id: str, user_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/room/{room_id}/member/{user_id}")
        return self._json(response)

    async def get_group_summary(self, group_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/group/{group_id}/summary")
        return self._json(response)

    async def get_group_member_count(self, group_id: str) -> int:
        response = await self._request("GET", f"{self.base_url}/group/{group_id}/members/count")
        return int(self._json(response).get("count", 0))

    async def get_channel_info(self) -> Dict[str, Any]:
        response = await self._request("GET", f"{self.base_url}/info")
        return self._json(response)

    async def get_content(self, message_id: str) -> bytes:
        response = await self._request("GET", f"{self.data_url}/message/{message_id}/content")
        return response.content

    def validate_signature(self, body: bytes, signature: str) -> bool:
        return validate_signature(body, signature, self.channel.channel_secret)


def get_line_client(channel: Channel) -> LineClient:
    return LineClient(channel)


def compute_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def validate_signature(body: bytes, signature: str, channel_secret: str) -> bool:
    """base64(HMAC-SHA256(secret, body)) compared in constant time."""
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, channel_secret), signature)


# ── message builders ────────────────────────────────────────────────────────

def _require_https(url: Optional[str], label: str) -> str:
    if not url:
        raise ValidationError(f"{label} URL is required")
    if not url.startswith("https://"):
        raise ValidationError(f"{label} URL must use HTTPS")
    return url


def _video_preview_url(url: str) -> str:
    return re.sub(r"\.[^/.]+$", ".jpg", url)


def build_outgoing_message(
    message_type: str,
    content: Optional[str] = None,
    media_url: Optional[str] = None,
    package_id: Optional[str] = None,
    sticker_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], str]:
    """
    Build one platform message for a manual reply.
    Returns ``(message, preview)``; raises ValidationError on bad input.
    """
    if message_type == "text":
        if not content or not content.strip():
            raise ValidationError("Message text is required")
        return {"type": "text", "text": content}, content

    if message_type == "image":
        url = _require_https(media_url, "Image")
        return {"type": "image", "originalContentUrl": url, "previewImageUrl": url}, PREVIEWS["image"]

    if message_type == "video":
        url = _require_https(media_url, "Video")
        return {
            "type": "video",
            "originalContentUrl": url,
            "previewImageUrl": _video_preview_url(url),
        }, PREVIEWS["video"]

    if message_type == "audio":
        url = _require_https(media_url, "Audio")
        return {
            "type": "audio",
            "originalContentUrl": url,
            "duration": AUDIO_DEFAULT_DURATION_MS,
        }, PREVIEWS["audio"]

    if message_type == "sticker":
        if not package_id or not sticker_id:
            raise ValidationError("package_id and sticker_id are required")
        return {
            "type": "sticker",
            "packageId": str(package_id),
            "stickerId": str(sticker_id),
        }, PREVIEWS["sticker"]

    raise ValidationError(f"message_type must be one of: {', '.join(OUTGOING_TYPES)}")


def convert_flex(content: Union[str, dict], alt_text: Optional[str] = None) -> Dict[str, Any]:
    """
    Accept either a bare bubble/carousel (simulator format) or a full flex
    message object and return a flex message ready to send.
    """
    alt_text = alt_text or "Flex Message"
    try:
        parsed = json.loads(content) if isinstance(content, str) else content
    except ValueError as e:
        raise ValidationError(f"Flex JSON error: {e}")

    if not isinstance(parsed, dict):
        raise ValidationError("Flex JSON error: expected an object")
    if parsed.get("type") in ("bubble", "carousel"):
        return {"type": "flex", "altText": alt_text, "contents": parsed}
    if parsed.get("type") == "flex" and parsed.get("contents"):
        return {"type": "flex", "altText": parsed.get("altText") or alt_text, "contents": parsed["contents"]}
    raise ValidationError("Flex JSON error: Invalid Flex JSON format")


def convert_message_input(item: Dict[str, Any]) -> Dict[str, Any]:
    """``{type, content, altText?}`` as used by broadcasts and quick replies -> platform message."""
    message_type = item.get("type")
    content = item.get("content")
    if message_type == "text":
        if not content:
            raise ValidationError("Message text is required")
        return {"type": "text", "text": content}
    if message_type == "image":
        url = _require_https(content, "Image")
        return {"type": "image", "originalContentUrl": url, "previewImageUrl": url}
    if message_type == "flex":
        if not content:
            raise ValidationError("Flex content is required")
        return convert_flex(content, item.get("altText"))
    raise ValidationError(f"Unsupported message type: {message_type}")


def preview_for(message_type: str, content: Optional[str] = None) -> str:
    if message_type == "text":
        return (content or "")[:100]
    return PREVIEWS.get(message_type, f"[{message_type}]")
