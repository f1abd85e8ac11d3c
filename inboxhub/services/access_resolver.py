"""
Access Resolver - who may do what on which channel.

Rules:
- The channel owner holds every capability.
- Anyone else gets the union of the capabilities of all their *active*
  grants that match the channel: grants scoped to that channel plus the
  owner's all-channels grants (``channel_id IS NULL``).
- Write-class actions (sending, broadcasting, platform refresh) are refused
  on an inactive channel, whoever asks. Reads still work.

Nothing is cached. Every check re-reads grant rows so a revocation takes
effect on the next request.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from inboxhub.core.errors import ChannelDisabled, Forbidden, NotFound, ValidationError
from inboxhub.models.entities import (
    AdminPermission,
    CAPABILITIES,
    Channel,
    ChannelStatus,
    GrantStatus,
)

IS_OWNER = "is_owner"


@dataclass
class ChannelAccess:
    """Effective access of one user on one channel."""

    channel: Channel
    is_owner: bool = False
    capabilities: Set[str] = field(default_factory=set)
    grant_ids: List[int] = field(default_factory=list)

    @property
    def has_access(self) -> bool:
        return self.is_owner or bool(self.grant_ids)

    def can(self, capability: str) -> bool:
        if capability == IS_OWNER:
            return self.is_owner
        return self.is_owner or capability in self.capabilities

    def permissions(self) -> Dict[str, bool]:
        return {cap: self.can(cap) for cap in CAPABILITIES}


class AccessResolver:
    """Stateless; every method takes the session it should query."""

    @staticmethod
    def _check_capability_name(capability: Optional[str]) -> None:
        if capability is not None and capability != IS_OWNER and capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")

    @staticmethod
    def matching_grants(db: Session, user_id: int, channel: Channel) -> List[AdminPermission]:
        """Active grants held by ``user_id`` that reach ``channel``."""
        return db.query(AdminPermission).filter(
            AdminPermission.admin_id == user_id,
            AdminPermission.status == GrantStatus.ACTIVE.value,
            or_(
                AdminPermission.channel_id == channel.id,
                and_(
                    AdminPermission.channel_id.is_(None),
                    AdminPermission.owner_id == channel.user_id,
                ),
            ),
        ).all()

    @classmethod
    def resolve(cls, db: Session, user_id: int, channel: Channel) -> ChannelAccess:
        if channel.user_id == user_id:
            return ChannelAccess(channel=channel, is_owner=True, capabilities=set(CAPABILITIES))

        access = ChannelAccess(channel=channel)
        for grant in cls.matching_grants(db, user_id, channel):
            access.grant_ids.append(grant.id)
            for capability in CAPABILITIES:
                if grant.allows(capability):
                    access.capabilities.add(capability)
        return access

    @classmethod
    def has_capability(cls, db: Session, user_id: int, channel: Channel, capability: str) -> bool:
        cls._check_capability_name(capability)
        return cls.resolve(db, user_id, channel).can(capability)

    @classmethod
    def require(
        cls,
        db: Session,
        user_id: int,
        channel: Channel,
        capability: Optional[str] = None,
        write: bool = False,
        message: Optional[str] = None,
    ) -> ChannelAccess:
        """
        Resolve access or raise.

        No access at all -> NotFound (same answer as a missing channel).
        Access without ``capability`` -> Forbidden.
        ``write`` on an inactive channel -> ChannelDisabled.
        """
        cls._check_capability_name(capability)
        access = cls.resolve(db, user_id, channel)
        if not access.has_access:
            raise NotFound("Channel not found")
        if capability and not access.can(capability):
            raise Forbidden(message or "You do not have permission for this action")
        if write and channel.status != ChannelStatus.ACTIVE.value:
            raise ChannelDisabled("Channel is disabled")
        return access

    @classmethod
    def get_channel(
        cls,
        db: Session,
        user_id: int,
        channel_id: int,
        capability: Optional[str] = None,
        write: bool = False,
        message: Optional[str] = None,
    ) -> ChannelAccess:
        """Load a channel by primary key and ``require`` access to it."""
        if channel_id is None:
            raise ValidationError("channel_id is required")
        channel = db.query(Channel).filter(Channel.id == channel_id).first()
        if not channel:
            raise NotFound("Channel not found")
        return cls.require(db, user_id, channel, capability=capability, write=write, message=message)

    # ── listing ─────────────────────────────────────────────────────────────

    @staticmethod
    def active_grants(db: Session, user_id: int) -> List[AdminPermission]:
        return db.query(AdminPermission).filter(
            AdminPermission.admin_id == user_id,
            AdminPermission.status == GrantStatus.ACTIVE.value,
        ).all()

    @classmethod
    def accessible_owner_ids(cls, db: Session, user_id: int) -> Set[int]:
        """Self plus every owner who granted the user anything."""
        owner_ids = {user_id}
        owner_ids.update(grant.owner_id for grant in cls.active_grants(db, user_id))
        return owner_ids

    @classmethod
    def accessible_channels(
        cls, db: Session, user_id: int, active_only: bool = False
    ) -> List[Channel]:
        """Owned channels, channels granted directly, and all channels of owners with a global grant."""
        grants = cls.active_grants(db, user_id)
        channel_ids = {g.channel_id for g in grants if g.channel_id is not None}
        owner_ids = {g.owner_id for g in grants if g.channel_id is None}
        owner_ids.add(user_id)

        clauses = [Channel.user_id.in_(owner_ids)]
        if channel_ids:
            clauses.append(Channel.id.in_(channel_ids))
        query = db.query(Channel).filter(or_(*clauses))
        if active_only:
            query = query.filter(Channel.status == ChannelStatus.ACTIVE.value)
        return query.order_by(Channel.created_at.desc()).all()

    @classmethod
    def accessible_channel_ids(cls, db: Session, user_id: int, active_only: bool = False) -> List[int]:
        return [c.id for c in cls.accessible_channels(db, user_id, active_only=active_only)]

    @classmethod
    def capability_map(
        cls, db: Session, user_id: int, channels: Iterable[Channel]
    ) -> Dict[int, ChannelAccess]:
        """Effective access per channel, computed from one grant query."""
        grants = cls.active_grants(db, user_id)
        result = {}
        for channel in channels:
            if channel.user_id == user_id:
                result[channel.id] = ChannelAccess(
                    channel=channel, is_owner=True, capabilities=set(CAPABILITIES)
                )
                continue
            access = ChannelAccess(channel=channel)
            for grant in grants:
                reaches = grant.channel_id == channel.id or (
                    grant.channel_id is None and grant.owner_id == channel.user_id
                )
                if not reaches:
                    continue
                access.grant_ids.append(grant.id)
                access.capabilities.update(c for c in CAPABILITIES if grant.allows(c))
            result[channel.id] = access
        return result

    @classmethod
    def channel_audience(cls, db: Session, channel: Channel) -> Set[int]:
        """Owner plus every admin with an active grant reaching the channel."""
        audience = {channel.user_id}
        rows = db.query(AdminPermission.admin_id).filter(
            AdminPermission.status == GrantStatus.ACTIVE.value,
            AdminPermission.admin_id.isnot(None),
            or_(
                AdminPermission.channel_id == channel.id,
                and_(
                    AdminPermission.channel_id.is_(None),
                    AdminPermission.owner_id == channel.user_id,
                ),
            ),
        ).all()
        audience.update(row[0] for row in rows)
        return audience

    @classmethod
    def owner_capability(cls, db: Session, user_id: int, owner_id: int, capability: str) -> bool:
        """Owner-level check (tags): self, or any active grant from ``owner_id`` allowing ``capability``."""
        cls._check_capability_name(capability)
        if user_id == owner_id:
            return True
        grants = db.query(AdminPermission).filter(
            AdminPermission.admin_id == user_id,
            AdminPermission.owner_id == owner_id,
            AdminPermission.status == GrantStatus.ACTIVE.value,
        ).all()
        return any(grant.allows(capability) for grant in grants)

