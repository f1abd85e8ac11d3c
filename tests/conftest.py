"""
Shared fixtures: in-memory SQLite database, a TestClient wired to a fresh
notifier, seeded users/channels and a stubbed LINE client.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="inboxhub-test-"))
os.environ.setdefault("APP_URL", "https://inbox.example.com")
os.environ.setdefault("BROADCAST_BATCH_DELAY_MS", "0")
os.environ.setdefault("EMAIL_VERIFICATION_REQUIRED", "false")

import pytest
from fastapi.testclient import TestClient

from inboxhub.core.auth import token_for_user
from inboxhub.main import app
from inboxhub.models.database import SessionLocal, engine
from inboxhub.models.entities import (
    AdminPermission,
    Base,
    Channel,
    ChannelStatus,
    Conversation,
    FollowStatus,
    GrantStatus,
    LineUser,
    SourceType,
    User,
    normalize_permissions,
)
from inboxhub.services.channels.line import compute_signature
from inboxhub.services.notifier import NotificationRegistry

LINE_CLIENT_TARGETS = (
    "inboxhub.api.routes.channels.get_line_client",
    "inboxhub.api.routes.messages.get_line_client",
    "inboxhub.services.webhook_service.get_line_client",
    "inboxhub.services.broadcast_service.get_line_client",
    "inboxhub.services.bot_service.get_line_client",
)


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    registry = NotificationRegistry()
    app.state.notifier = registry
    yield registry
    registry.close()


@pytest.fixture
def client(notifier):
    return TestClient(app)


@pytest.fixture
def line_client():
    """AsyncMock standing in for every LINE client the app creates."""
    mock = MagicMock()
    mock.push = AsyncMock(return_value={})
    mock.get_profile = AsyncMock(return_value={"displayName": "Customer", "pictureUrl": None})
    mock.get_channel_info = AsyncMock(return_value={"basicId": "@bot", "pictureUrl": None})
    mock.get_group_summary = AsyncMock(return_value={"groupName": "Group"})
    mock.get_group_member_count = AsyncMock(return_value=3)
    mock.get_group_member_profile = AsyncMock(return_value={"displayName": "Member"})
    mock.get_room_member_profile = AsyncMock(return_value={"displayName": "Member"})
    mock.get_content = AsyncMock(return_value=b"media")
    mock.data_url = "https://api-data.line.me/v2/bot"

    patchers = [patch(target, return_value=mock) for target in LINE_CLIENT_TARGETS]
    for patcher in patchers:
        patcher.start()
    yield mock
    for patcher in patchers:
        patcher.stop()


def make_user(db, email, name=None, password="secret123"):
    return User.create_user(db, name or email.split("@")[0], email, password)


def make_channel(db, owner, platform_id="1650000001", status=ChannelStatus.ACTIVE.value):
    channel = Channel(
        user_id=owner.id,
        channel_name=f"Channel {platform_id}",
        channel_id=platform_id,
        status=status,
    )
    channel.channel_secret = "channel-secret"
    channel.channel_access_token = "access-token"
    db.add(channel)
    db.commit()
    db.refresh(channel)
    return channel


def make_grant(db, owner, admin, channel=None, status=GrantStatus.ACTIVE.value, **permissions):
    grant = AdminPermission(
        owner_id=owner.id,
        admin_id=admin.id if admin else None,
        channel_id=channel.id if channel else None,
        permissions=normalize_permissions(permissions),
        status=status,
    )
    db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


def make_invite(db, owner, email, token="invite-token", channel=None):
    """Pending email invite bound to a placeholder account, as the team API creates it."""
    invitee = User.get_by_email(db, email) or User.create_pending(db, email)
    grant = AdminPermission(
        owner_id=owner.id,
        admin_id=invitee.id,
        channel_id=channel.id if channel else None,
        permissions=normalize_permissions({}),
        status=GrantStatus.PENDING.value,
        invite_email=invitee.email,
        invite_token=token,
        invite_expires_at=datetime.utcnow() + timedelta(days=1),
    )
    db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


def make_contact(db, channel, line_user_id, **fields):
    contact = LineUser(
        channel_id=channel.id,
        line_user_id=line_user_id,
        display_name=fields.pop("display_name", line_user_id[:8]),
        source_type=fields.pop("source_type", SourceType.USER.value),
        follow_status=fields.pop("follow_status", FollowStatus.FOLLOWING.value),
        **fields,
    )
    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def make_conversation(db, channel, contact, **fields):
    conversation = Conversation(channel_id=channel.id, contact_id=contact.id, **fields)
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for_user(user)}"}


def line_id(n):
    """A well-formed LINE user id."""
    return "U" + f"{n:032x}"


@pytest.fixture
def owner(db):
    return make_user(db, "owner@example.com", "Owner")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", "Admin")


@pytest.fixture
def channel(db, owner):
    return make_channel(db, owner)


def text_event(user_id, text, message_id="m1"):
    return {
        "type": "message",
        "replyToken": "reply-token",
        "timestamp": 1700000000000,
        "source": {"type": "user", "userId": user_id},
        "message": {"id": message_id, "type": "text", "text": text},
    }


def post_events(client, channel, events, secret="channel-secret", headers=None):
    """POST a signed webhook batch for ``channel``."""
    body = json.dumps({"destination": "bot", "events": events}).encode()
    all_headers = {
        "content-type": "application/json",
        "x-line-signature": compute_signature(body, secret),
    }
    all_headers.update(headers or {})
    return client.post(f"/api/webhook/{channel.channel_id}", content=body, headers=all_headers)
