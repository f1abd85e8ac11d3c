from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint

from inboxhub.models.entities.base import Base, TimestampMixin, iso

DEFAULT_TAG_COLOR = "#06C755"


class Tag(TimestampMixin, Base):
    """Label owned by a channel owner and shared with that owner's team."""

    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    color = Column(String(20), default=DEFAULT_TAG_COLOR, nullable=False)
    description = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_tag_owner_name"),
    )

    def to_brief(self) -> dict:
        return {"id": self.id, "name": self.name, "color": self.color}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "color": self.color,
            "description": self.description,
            "created_at": iso(self.created_at),
        }
