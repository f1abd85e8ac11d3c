from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from inboxhub.models.entities import Channel


class ChannelAPIError(Exception):
    """A messaging-platform call failed (non-2xx answer or transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class BaseChannelClient(ABC):
    """
    Abstract base class for messaging-platform clients.
    One instance talks on behalf of one connected channel.
    """

    def __init__(self, channel: Channel):
        self.channel = channel

    @abstractmethod
    async def push(self, to: str, messages: Union[Dict[str, Any], List[Dict[str, Any]]]) -> Dict[str, Any]:
        """
        Push one or more platform messages to a contact.
        Raises ChannelAPIError on failure.
        """

    @abstractmethod
    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        """Fetch a contact's public profile."""

    @abstractmethod
    def validate_signature(self, body: bytes, signature: str) -> bool:
        """Check an inbound webhook signature against the channel secret."""

    async def get_channel_info(self) -> Dict[str, Any]:
        """
        Bot/account info (if supported).
        """
        return {}
