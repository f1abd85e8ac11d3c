from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String

from inboxhub.models.entities.base import Base, TimestampMixin, iso

MAX_QUICK_REPLY_MESSAGES = 5


class QuickReply(TimestampMixin, Base):
    """Canned response for one channel; ``messages`` is a list of {type, content, ...}."""

    __tablename__ = "quick_replies"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    shortcut = Column(String(50), nullable=True, index=True)
    messages = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "created_by": self.created_by,
            "title": self.title,
            "shortcut": self.shortcut,
            "messages": self.messages or [],
            "is_active": self.is_active,
            "use_count": self.use_count,
            "sort_order": self.sort_order,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
