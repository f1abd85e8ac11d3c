"""
InboxHub Entity Models
======================

- User: accounts (owners and team members)
- Channel / LineUser: connected official accounts and their contacts
- AdminPermission: delegated access grants and invitations
- Conversation / Message: the inbox itself
- Tag / QuickReply: inbox helpers
- Broadcast / BroadcastRecipient: bulk sends with per-recipient outcomes
"""

from inboxhub.models.entities.base import Base
from inboxhub.models.entities.user import User, UserRole, UserStatus
from inboxhub.models.entities.channel import (
    Channel,
    ChannelStatus,
    FollowStatus,
    LineUser,
    SourceType,
)
from inboxhub.models.entities.permission import (
    AdminPermission,
    CAPABILITIES,
    DEFAULT_PERMISSIONS,
    GrantStatus,
    normalize_permissions,
)
from inboxhub.models.entities.tag import Tag
from inboxhub.models.entities.conversation import (
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageSource,
    conversation_tags,
)
from inboxhub.models.entities.quick_reply import QuickReply
from inboxhub.models.entities.broadcast import (
    Broadcast,
    BroadcastRecipient,
    BroadcastStatus,
    RecipientStatus,
)

__all__ = [
    'Base',
    'User', 'UserRole', 'UserStatus',
    'Channel', 'ChannelStatus', 'FollowStatus', 'LineUser', 'SourceType',
    'AdminPermission', 'CAPABILITIES', 'DEFAULT_PERMISSIONS', 'GrantStatus', 'normalize_permissions',
    'Tag',
    'Conversation', 'ConversationStatus', 'Message', 'MessageDirection', 'MessageSource', 'conversation_tags',
    'QuickReply',
    'Broadcast', 'BroadcastRecipient', 'BroadcastStatus', 'RecipientStatus',
]
