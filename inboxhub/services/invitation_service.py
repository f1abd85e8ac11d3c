"""
Team invitations and grant management.

A grant starts ``pending`` with an opaque ``invite_token`` and an expiry.
Accepting binds ``admin_id``, clears the token and makes it ``active``.
Owners may cancel pending invites, delete any grant they own, or edit its
status and capabilities directly.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from inboxhub.core.config import settings
from inboxhub.core.errors import Conflict, Expired, Forbidden, NotFound, ValidationError
from inboxhub.core.security import generate_token
from inboxhub.models.entities import (
    AdminPermission,
    Channel,
    ChannelStatus,
    GrantStatus,
    User,
    normalize_permissions,
)
from inboxhub.services import email_service

logger = logging.getLogger(__name__)

INVALID_INVITE_MESSAGE = "Invitation link is invalid or has already been used"


def invite_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/auth/accept-invite?token={token}"


def _scope(query, channel_id: Optional[int]):
    if channel_id is None:
        return query.filter(AdminPermission.channel_id.is_(None))
    return query.filter(AdminPermission.channel_id == channel_id)


def find_active_grant(
    db: Session, owner_id: int, admin_id: int, channel_id: Optional[int], exclude_id: Optional[int] = None
) -> Optional[AdminPermission]:
    query = db.query(AdminPermission).filter(
        AdminPermission.owner_id == owner_id,
        AdminPermission.admin_id == admin_id,
        AdminPermission.status == GrantStatus.ACTIVE.value,
    )
    if exclude_id is not None:
        query = query.filter(AdminPermission.id != exclude_id)
    return _scope(query, channel_id).first()


async def create_invite(
    db: Session,
    owner: User,
    email: Optional[str] = None,
    channel_id: Optional[int] = None,
    permissions: Optional[Dict[str, Any]] = None,
) -> Tuple[AdminPermission, bool]:
    """
    Create a pending grant. Returns ``(grant, email_sent)``.

    With an email the grant is pre-bound to that user (a pending account is
    created when nobody registered the address yet). Without one it is a
    link-only invite anyone but the owner can accept.
    """
    if channel_id is not None:
        channel = db.query(Channel).filter(
            Channel.id == channel_id,
            Channel.user_id == owner.id,
            Channel.status == ChannelStatus.ACTIVE.value,
        ).first()
        if not channel:
            raise NotFound("Channel not found, not yours, or disabled")

    admin = None
    normalized_email = None
    if email:
        normalized_email = User.normalize_email(email)
        if normalized_email == owner.email:
            raise Forbidden("You cannot invite yourself")

        admin = User.get_by_email(db, normalized_email)
        if admin is None:
            admin = User.create_pending(db, normalized_email)
            logger.info(f"[Team] Created pending account for invited email {normalized_email}")
        elif find_active_grant(db, owner.id, admin.id, channel_id):
            raise Conflict("This user is already a member of your team")

        already_invited = _scope(
            db.query(AdminPermission).filter(
                AdminPermission.owner_id == owner.id,
                AdminPermission.admin_id == admin.id,
                AdminPermission.status == GrantStatus.PENDING.value,
                AdminPermission.invite_expires_at > datetime.utcnow(),
            ),
            channel_id,
        ).first()
        if already_invited:
            raise Conflict("This email has already been invited")

    grant = AdminPermission(
        owner_id=owner.id,
        admin_id=admin.id if admin else None,
        channel_id=channel_id,
        permissions=normalize_permissions(permissions),
        status=GrantStatus.PENDING.value,
        invite_email=normalized_email,
        invite_token=generate_token(32),
        invite_expires_at=datetime.utcnow() + timedelta(days=settings.INVITE_EXPIRE_DAYS),
        invited_at=datetime.utcnow(),
    )
    db.add(grant)
    db.commit()
    db.refresh(grant)
    logger.info(f"[Team] Owner {owner.id} created invite {grant.id} (channel={channel_id})")

    # The grant stays pending whatever happens to the email.
    email_sent = False
    if normalized_email:
        email_sent = await email_service.send_invite_email(
            normalized_email, owner.name, invite_url(grant.invite_token)
        )
    return grant, email_sent


def fetch_invite(db: Session, token: str) -> AdminPermission:
    grant = db.query(AdminPermission).filter(
        AdminPermission.invite_token == token,
        AdminPermission.status == GrantStatus.PENDING.value,
    ).first()
    if not grant:
        raise NotFound(INVALID_INVITE_MESSAGE)
    if grant.is_expired:
        raise Expired("This invitation has expired")
    return grant


def invite_for_account(db: Session, token: Optional[str], user: User) -> AdminPermission:
    """
    The pending invite bound to ``user`` that ``token`` opens.

    Only the mailbox owner receives the token, so holding it proves the
    address of a placeholder account created by an email invite.
    """
    if not token:
        raise Forbidden("This email has a pending invitation. Open the invitation link to register")
    grant = fetch_invite(db, token)
    if grant.admin_id != user.id:
        raise Forbidden("This invitation was sent to a different account")
    return grant


def invite_preview(grant: AdminPermission) -> Dict[str, Any]:
    return {
        "owner": {"name": grant.owner.name, "email": grant.owner.email},
        "channel": (
            {"id": grant.channel.id, "name": grant.channel.channel_name}
            if grant.channel else {"id": None, "name": "All channels"}
        ),
        "permissions": normalize_permissions(grant.permissions),
        "invite_email": grant.invite_email,
        "invite_expires_at": grant.invite_expires_at.isoformat() if grant.invite_expires_at else None,
    }


def accept_invite(db: Session, token: str, user: User) -> AdminPermission:
    grant = fetch_invite(db, token)

    if grant.owner_id == user.id:
        raise Forbidden("You cannot accept your own invitation")
    if grant.admin_id is not None and grant.admin_id != user.id:
        raise Forbidden("This invitation was sent to a different account")

    if find_active_grant(db, grant.owner_id, user.id, grant.channel_id):
        # Stale duplicate; removed even though the request fails.
        logger.info(f"[Team] Removed duplicate invite {grant.id} for user {user.id}")
        db.delete(grant)
        db.commit()
        raise Conflict("You are already a member of this team")

    now = datetime.utcnow()
    result = db.execute(
        update(AdminPermission)
        .where(
            AdminPermission.id == grant.id,
            AdminPermission.status == GrantStatus.PENDING.value,
            AdminPermission.invite_token == token,
        )
        .values(
            admin_id=user.id,
            status=GrantStatus.ACTIVE.value,
            invite_token=None,
            accepted_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise NotFound(INVALID_INVITE_MESSAGE)
    db.commit()
    db.refresh(grant)
    logger.info(f"[Team] User {user.id} accepted invite {grant.id} from owner {grant.owner_id}")
    return grant


def cancel_invite(db: Session, token: str, user: User) -> None:
    grant = db.query(AdminPermission).filter(
        AdminPermission.invite_token == token,
        AdminPermission.status == GrantStatus.PENDING.value,
    ).first()
    if not grant:
        raise NotFound("Invitation not found")
    if grant.owner_id != user.id:
        raise Forbidden("Only the owner can cancel this invitation")
    grant_id = grant.id
    db.delete(grant)
    db.commit()
    logger.info(f"[Team] Owner {user.id} cancelled invite {grant_id}")


def list_team(db: Session, owner: User) -> List[AdminPermission]:
    return db.query(AdminPermission).filter(
        AdminPermission.owner_id == owner.id
    ).order_by(AdminPermission.created_at.desc()).all()


def list_memberships(db: Session, user: User) -> List[AdminPermission]:
    return db.query(AdminPermission).filter(
        AdminPermission.admin_id == user.id,
        AdminPermission.status == GrantStatus.ACTIVE.value,
    ).order_by(AdminPermission.created_at.desc()).all()


def get_member(db: Session, owner: User, grant_id: int) -> AdminPermission:
    grant = db.query(AdminPermission).filter(
        AdminPermission.id == grant_id,
        AdminPermission.owner_id == owner.id,
    ).first()
    if not grant:
        raise NotFound("Team member not found")
    return grant


def update_member(
    db: Session,
    owner: User,
    grant_id: int,
    permissions: Optional[Dict[str, Any]] = None,
    status: Optional[str] = None,
) -> AdminPermission:
    """Owners may set any status, including moving an active grant back."""
    grant = get_member(db, owner, grant_id)

    if permissions is not None:
        merged = dict(normalize_permissions(grant.permissions))
        merged.update(permissions)
        grant.permissions = normalize_permissions(merged)

    if status is not None:
        valid = {s.value for s in GrantStatus}
        if status not in valid:
            raise ValidationError(f"status must be one of: {', '.join(sorted(valid))}")
        if status == GrantStatus.ACTIVE.value and grant.status != status:
            if grant.admin_id is None:
                raise ValidationError("Nobody has accepted this invitation yet")
            if find_active_grant(db, grant.owner_id, grant.admin_id, grant.channel_id, exclude_id=grant.id):
                raise Conflict("This user already has an active grant for that scope")
        grant.status = status

    db.commit()
    db.refresh(grant)
    logger.info(f"[Team] Owner {owner.id} updated grant {grant.id} (status={grant.status})")
    return grant


def remove_member(db: Session, owner: User, grant_id: int) -> None:
    grant = get_member(db, owner, grant_id)
    db.delete(grant)
    db.commit()
    logger.info(f"[Team] Owner {owner.id} removed grant {grant_id}")
