"""
Bulk send jobs and their per-recipient outcomes.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from inboxhub.models.entities.base import Base, TimestampMixin, iso


class BroadcastStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


DISPATCHABLE_STATUSES = (BroadcastStatus.DRAFT.value, BroadcastStatus.SCHEDULED.value)


class RecipientStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Broadcast(TimestampMixin, Base):
    __tablename__ = "broadcasts"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    message_type = Column(String(20), default="text", nullable=False)
    content = Column(Text, nullable=False)
    media_url = Column(String(500), nullable=True)
    flex_content = Column(JSON, nullable=True)
    messages = Column(JSON, nullable=True)  # up to 5 platform messages; overrides the single-message fields
    target_type = Column(String(20), default="all", nullable=False)
    target_tags = Column(JSON, nullable=True)
    target_count = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=BroadcastStatus.DRAFT.value, nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    channel = relationship("Channel")
    recipients = relationship(
        "BroadcastRecipient",
        back_populates="broadcast",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_broadcast_channel_created", "channel_id", "created_at"),
        Index("idx_broadcast_status_scheduled", "status", "scheduled_at"),
    )

    @property
    def is_dispatchable(self) -> bool:
        return self.status in DISPATCHABLE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "message_type": self.message_type,
            "content": self.content,
            "media_url": self.media_url,
            "flex_content": self.flex_content,
            "messages": self.messages,
            "target_type": self.target_type,
            "target_tags": self.target_tags or [],
            "target_count": self.target_count,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "status": self.status,
            "scheduled_at": iso(self.scheduled_at),
            "sent_at": iso(self.sent_at),
            "completed_at": iso(self.completed_at),
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
        }


class BroadcastRecipient(Base):
    __tablename__ = "broadcast_recipients"

    id = Column(Integer, primary_key=True, index=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("line_users.id", ondelete="SET NULL"), nullable=True)
    line_user_id = Column(String(100), nullable=False)
    display_name = Column(String(255), nullable=True)
    picture_url = Column(String(500), nullable=True)
    status = Column(String(20), default=RecipientStatus.PENDING.value, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    broadcast = relationship("Broadcast", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint("broadcast_id", "line_user_id", name="uq_broadcast_recipient"),
        Index("idx_recipient_broadcast_status", "broadcast_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_user_id": self.line_user_id,
            "display_name": self.display_name,
            "picture_url": self.picture_url,
            "status": self.status,
            "error_message": self.error_message,
            "sent_at": iso(self.sent_at),
        }
