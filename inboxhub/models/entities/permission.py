"""
Admin permission grants: delegation of an owner's channels to team members.
"""

import enum
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, text
from sqlalchemy.orm import relationship

from inboxhub.models.entities.base import Base, TimestampMixin, iso

CAPABILITIES = (
    "can_reply",
    "can_view_all",
    "can_broadcast",
    "can_manage_tags",
    "can_manage_channel",
)

DEFAULT_PERMISSIONS = {
    "can_reply": True,
    "can_view_all": False,
    "can_broadcast": False,
    "can_manage_tags": False,
    "can_manage_channel": False,
}


class GrantStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


def normalize_permissions(permissions: Optional[Dict]) -> Dict[str, bool]:
    """Full capability map; unknown keys are dropped, missing ones take defaults."""
    result = dict(DEFAULT_PERMISSIONS)
    for key, value in (permissions or {}).items():
        if key in CAPABILITIES:
            result[key] = bool(value)
    return result


class AdminPermission(TimestampMixin, Base):
    """
    Grant from ``owner_id`` to ``admin_id``.

    ``channel_id`` NULL means the grant covers every channel of the owner.
    ``admin_id`` stays NULL for link invites until someone accepts.
    """

    __tablename__ = "admin_permissions"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=True, index=True)
    permissions = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_PERMISSIONS))
    status = Column(String(20), default=GrantStatus.PENDING.value, nullable=False, index=True)
    invite_email = Column(String(255), nullable=True)
    invite_token = Column(String(128), nullable=True, unique=True, index=True)
    invite_expires_at = Column(DateTime, nullable=True)
    invited_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    accepted_at = Column(DateTime, nullable=True)

    owner = relationship("User", foreign_keys=[owner_id])
    admin = relationship("User", foreign_keys=[admin_id])
    channel = relationship("Channel")

    __table_args__ = (
        Index("idx_admin_perm_owner_admin", "owner_id", "admin_id"),
        Index("idx_admin_perm_admin_status", "admin_id", "status"),
        Index(
            "uq_active_grant_scope", "owner_id", "admin_id", "channel_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_active_grant_all_channels", "owner_id", "admin_id",
            unique=True,
            postgresql_where=text("status = 'active' AND channel_id IS NULL"),
            sqlite_where=text("status = 'active' AND channel_id IS NULL"),
        ),
    )

    def allows(self, capability: str) -> bool:
        return bool((self.permissions or {}).get(capability, False))

    @property
    def is_expired(self) -> bool:
        return self.invite_expires_at is not None and datetime.utcnow() > self.invite_expires_at

    def to_dict(self, include_token: bool = False) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "admin": self.admin.to_brief() if self.admin else None,
            "invite_email": self.invite_email,
            "channel": (
                {"id": self.channel.id, "name": self.channel.channel_name}
                if self.channel else {"id": None, "name": "All channels"}
            ),
            "permissions": normalize_permissions(self.permissions),
            "status": self.status,
            "invite_expires_at": iso(self.invite_expires_at),
            "invited_at": iso(self.invited_at),
            "accepted_at": iso(self.accepted_at),
            "created_at": iso(self.created_at),
        }
        if include_token:
            data["invite_token"] = self.invite_token
        return data
