"""
Connected messaging-platform accounts and the end-users who write to them.
"""

import enum
import re

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from inboxhub.core.security import decrypt_secret, encrypt_secret
from inboxhub.models.entities.base import Base, TimestampMixin, iso

# LINE user ids are "U" followed by 32 hex characters
LINE_USER_ID_PATTERN = re.compile(r"^U[a-f0-9]{32}$", re.IGNORECASE)


class ChannelStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class FollowStatus(str, enum.Enum):
    FOLLOWING = "following"
    UNFOLLOWED = "unfollowed"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"


class SourceType(str, enum.Enum):
    USER = "user"
    GROUP = "group"
    ROOM = "room"


class Channel(TimestampMixin, Base):
    """A connected official account, owned by exactly one user."""

    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    channel_name = Column(String(255), nullable=False)
    channel_id = Column(String(100), nullable=False, index=True)  # platform channel id
    channel_secret_encrypted = Column(Text, nullable=False)
    channel_access_token_encrypted = Column(Text, nullable=False)
    webhook_url = Column(String(500), nullable=True)
    basic_id = Column(String(100), nullable=True)
    picture_url = Column(String(500), nullable=True)
    status = Column(String(20), default=ChannelStatus.ACTIVE.value, nullable=False, index=True)

    owner = relationship("User")

    __table_args__ = (
        UniqueConstraint("user_id", "channel_id", name="uq_channel_owner_platform_id"),
        Index("idx_channel_platform_status", "channel_id", "status"),
    )

    @property
    def channel_secret(self) -> str:
        return decrypt_secret(self.channel_secret_encrypted)

    @channel_secret.setter
    def channel_secret(self, value: str):
        self.channel_secret_encrypted = encrypt_secret(value)

    @property
    def channel_access_token(self) -> str:
        return decrypt_secret(self.channel_access_token_encrypted)

    @channel_access_token.setter
    def channel_access_token(self, value: str):
        self.channel_access_token_encrypted = encrypt_secret(value)

    @property
    def is_active(self) -> bool:
        return self.status == ChannelStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel_name": self.channel_name,
            "channel_id": self.channel_id,
            "webhook_url": self.webhook_url,
            "basic_id": self.basic_id,
            "picture_url": self.picture_url,
            "status": self.status,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def to_brief(self) -> dict:
        return {
            "id": self.id,
            "channel_name": self.channel_name,
            "picture_url": self.picture_url,
            "basic_id": self.basic_id,
        }


class LineUser(TimestampMixin, Base):
    """An end customer (or group/room) talking to a channel."""

    __tablename__ = "line_users"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    line_user_id = Column(String(100), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    picture_url = Column(String(500), nullable=True)
    status_message = Column(Text, nullable=True)
    language = Column(String(10), default="th")
    is_blocked = Column(Boolean, default=False, nullable=False)
    is_spam = Column(Boolean, default=False, nullable=False)
    follow_status = Column(String(20), default=FollowStatus.UNKNOWN.value, nullable=False, index=True)
    source_type = Column(String(10), default=SourceType.USER.value, nullable=False, index=True)
    group_id = Column(String(100), nullable=True)
    room_id = Column(String(100), nullable=True)
    member_count = Column(Integer, default=0)
    last_message_at = Column(DateTime, nullable=True)

    channel = relationship("Channel")

    __table_args__ = (
        UniqueConstraint("channel_id", "line_user_id", name="uq_line_user_per_channel"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_user_id": self.line_user_id,
            "display_name": self.display_name,
            "picture_url": self.picture_url,
            "status_message": self.status_message,
            "follow_status": self.follow_status,
            "source_type": self.source_type,
            "group_id": self.group_id,
            "room_id": self.room_id,
            "member_count": self.member_count,
            "is_blocked": self.is_blocked,
            "is_spam": self.is_spam,
        }
