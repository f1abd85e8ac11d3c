from inboxhub.services.channels.base import BaseChannelClient, ChannelAPIError
from inboxhub.services.channels.line import LineAPIError, LineClient, get_line_client

__all__ = ['BaseChannelClient', 'ChannelAPIError', 'LineAPIError', 'LineClient', 'get_line_client']
