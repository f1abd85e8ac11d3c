"""
Conversations between a channel and one contact, and the messages inside them.
"""

import enum
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Table, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from inboxhub.models.entities.base import Base, TimestampMixin, iso


class ConversationStatus(str, enum.Enum):
    UNREAD = "unread"
    READ = "read"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SPAM = "spam"


CONVERSATION_STATUSES = tuple(s.value for s in ConversationStatus)


class MessageDirection(str, enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageSource(str, enum.Enum):
    MANUAL = "manual"
    AUTO_REPLY = "auto_reply"
    BOT_REPLY = "bot_reply"         # logged by an external bot
    BOT_API = "bot_api"             # pushed through the bot API
    BROADCAST = "broadcast"


conversation_tags = Table(
    "conversation_tags",
    Base.metadata,
    Column("conversation_id", Integer, ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Conversation(TimestampMixin, Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("line_users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), default=ConversationStatus.UNREAD.value, nullable=False, index=True)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    priority = Column(String(10), default="normal", nullable=False)
    last_message_preview = Column(String(255), nullable=True)
    last_message_at = Column(DateTime, nullable=True, index=True)
    unread_count = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)

    channel = relationship("Channel")
    contact = relationship("LineUser")
    assignee = relationship("User")
    tags = relationship("Tag", secondary=conversation_tags, order_by="Tag.name")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )

    __table_args__ = (
        UniqueConstraint("channel_id", "contact_id", name="uq_conversation_channel_contact"),
        Index("idx_conv_channel_status_last", "channel_id", "status", "last_message_at"),
    )

    def touch(self, preview: str, at: datetime = None):
        self.last_message_preview = (preview or "")[:100]
        self.last_message_at = at or datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "contact_id": self.contact_id,
            "status": self.status,
            "priority": self.priority,
            "last_message_preview": self.last_message_preview,
            "last_message_at": iso(self.last_message_at),
            "unread_count": self.unread_count,
            "notes": self.notes,
            "created_at": iso(self.created_at),
            "channel": self.channel.to_brief() if self.channel else None,
            "line_user": self.contact.to_dict() if self.contact else None,
            "assigned_to": self.assignee.to_brief() if self.assignee else None,
            "tags": [tag.to_brief() for tag in self.tags],
        }


class Message(Base):
    """Immutable once stored, except for the read-state fields."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("line_users.id", ondelete="CASCADE"), nullable=False, index=True)
    platform_message_id = Column(String(100), nullable=True, index=True)
    direction = Column(String(10), nullable=False, index=True)
    message_type = Column(String(20), nullable=False)
    content = Column(Text, nullable=True)
    flex_content = Column(JSON, nullable=True)
    media_url = Column(String(500), nullable=True)
    sticker_id = Column(String(50), nullable=True)
    package_id = Column(String(50), nullable=True)
    reply_token = Column(String(100), nullable=True)
    sender_info = Column(JSON, nullable=True)  # group/room speaker
    sent_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    source_type = Column(String(20), default=MessageSource.MANUAL.value, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("idx_msg_conversation_created", "conversation_id", "created_at"),
        Index("idx_msg_channel_direction_created", "channel_id", "direction", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "message_type": self.message_type,
            "content": self.content,
            "flex_content": self.flex_content,
            "media_url": self.media_url,
            "sticker_id": self.sticker_id,
            "package_id": self.package_id,
            "sender_info": self.sender_info,
            "sent_by": self.sent_by,
            "source_type": self.source_type,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "created_at": iso(self.created_at),
        }
