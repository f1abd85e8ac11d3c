from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from conftest import auth_headers, make_grant, make_user
from inboxhub.core.errors import Conflict, Expired, Forbidden, NotFound
from inboxhub.models.entities import AdminPermission, ChannelStatus, GrantStatus, User, UserStatus
from inboxhub.services import email_service, invitation_service


class TestCreateInvite:

    async def test_link_invite(self, db, owner, channel):
        grant, email_sent = await invitation_service.create_invite(
            db, owner, channel_id=channel.id, permissions={"can_broadcast": True, "bogus": True}
        )
        assert grant.status == GrantStatus.PENDING.value
        assert grant.admin_id is None
        assert grant.invite_token
        assert grant.invite_expires_at > datetime.utcnow() + timedelta(days=6)
        assert grant.permissions["can_broadcast"] is True
        assert "bogus" not in grant.permissions
        assert email_sent is False

    async def test_self_invite_forbidden(self, db, owner):
        with pytest.raises(Forbidden):
            await invitation_service.create_invite(db, owner, email="OWNER@example.com")

    async def test_channel_must_be_owned_and_active(self, db, owner, admin, channel):
        with pytest.raises(NotFound):
            await invitation_service.create_invite(db, admin, channel_id=channel.id)

        channel.status = ChannelStatus.INACTIVE.value
        db.commit()
        with pytest.raises(NotFound):
            await invitation_service.create_invite(db, owner, channel_id=channel.id)

    async def test_unknown_email_creates_pending_account(self, db, owner):
        with patch.object(invitation_service.email_service, "send_invite_email",
                          new=AsyncMock(return_value=True)) as send:
            grant, email_sent = await invitation_service.create_invite(db, owner, email="new@example.com")

        invitee = User.get_by_email(db, "new@example.com")
        assert invitee.status == UserStatus.PENDING.value
        assert grant.admin_id == invitee.id
        assert email_sent is True
        send.assert_awaited_once()
        assert grant.invite_token in send.await_args.args[2]

    async def test_duplicate_pending_invite_conflicts(self, db, owner, admin):
        await invitation_service.create_invite(db, owner, email=admin.email)
        with pytest.raises(Conflict):
            await invitation_service.create_invite(db, owner, email=admin.email)

    async def test_existing_member_conflicts(self, db, owner, admin):
        make_grant(db, owner, admin, None)
        with pytest.raises(Conflict):
            await invitation_service.create_invite(db, owner, email=admin.email)

    async def test_email_failure_keeps_grant(self, db, owner, admin):
        with patch.object(invitation_service.email_service, "send_invite_email",
                          new=AsyncMock(return_value=False)):
            grant, email_sent = await invitation_service.create_invite(db, owner, email=admin.email)
        assert email_sent is False
        assert db.query(AdminPermission).filter(AdminPermission.id == grant.id).count() == 1


class TestInviteEmail:

    async def test_html_body_escapes_owner_name_and_link(self):
        with patch.object(email_service, "send_email", new=AsyncMock(return_value=True)) as send:
            await email_service.send_invite_email(
                "admin@example.com",
                "<img src=x onerror=alert(1)>",
                "https://inbox.example.com/auth/accept-invite?token=a&b",
            )
        _, _, text_body, html_body = send.await_args.args
        assert "<img" not in html_body
        assert "&lt;img src=x onerror=alert(1)&gt;" in html_body
        assert 'href="https://inbox.example.com/auth/accept-invite?token=a&amp;b"' in html_body
        assert text_body.startswith("<img src=x onerror=alert(1)> invited you")


class TestGrantScope:

    def test_one_active_all_channels_grant_per_pair(self, db, owner, admin):
        make_grant(db, owner, admin, None)
        with pytest.raises(IntegrityError):
            make_grant(db, owner, admin, None)
        db.rollback()

        make_grant(db, owner, admin, None, status=GrantStatus.REVOKED.value)
        make_grant(db, owner, admin, None, status=GrantStatus.PENDING.value)
        assert db.query(AdminPermission).count() == 3

    def test_one_active_grant_per_channel(self, db, owner, admin, channel):
        make_grant(db, owner, admin, channel)
        with pytest.raises(IntegrityError):
            make_grant(db, owner, admin, channel)
        db.rollback()


class TestAcceptInvite:

    async def test_accept_activates_and_clears_token(self, db, owner, admin, channel):
        grant, _ = await invitation_service.create_invite(db, owner, channel_id=channel.id)
        token = grant.invite_token

        accepted = invitation_service.accept_invite(db, token, admin)
        assert accepted.status == GrantStatus.ACTIVE.value
        assert accepted.admin_id == admin.id
        assert accepted.invite_token is None
        assert accepted.accepted_at is not None

    async def test_second_accept_fails(self, db, owner, admin):
        other = make_user(db, "other@example.com")
        grant, _ = await invitation_service.create_invite(db, owner)
        token = grant.invite_token

        invitation_service.accept_invite(db, token, admin)
        with pytest.raises(NotFound):
            invitation_service.accept_invite(db, token, other)

    async def test_concurrent_accept_only_one_wins(self, db, owner, admin):
        other = make_user(db, "other@example.com")
        grant, _ = await invitation_service.create_invite(db, owner)
        token = grant.invite_token
        grant_id = grant.id
        stale = invitation_service.fetch_invite(db, token)
        db.expunge(stale)

        # The other request wins between our read and our update.
        db.execute(
            update(AdminPermission)
            .where(AdminPermission.id == grant_id)
            .values(admin_id=other.id, status=GrantStatus.ACTIVE.value, invite_token=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        with patch.object(invitation_service, "fetch_invite", return_value=stale):
            with pytest.raises(NotFound):
                invitation_service.accept_invite(db, token, admin)

        db.expire_all()
        row = db.query(AdminPermission).filter(AdminPermission.id == grant_id).one()
        assert row.admin_id == other.id

    async def test_owner_cannot_accept_own_invite(self, db, owner):
        grant, _ = await invitation_service.create_invite(db, owner)
        with pytest.raises(Forbidden):
            invitation_service.accept_invite(db, grant.invite_token, owner)

    async def test_prebound_invite_rejects_other_account(self, db, owner, admin):
        other = make_user(db, "other@example.com")
        grant, _ = await invitation_service.create_invite(db, owner, email=admin.email)
        with pytest.raises(Forbidden):
            invitation_service.accept_invite(db, grant.invite_token, other)

    async def test_expired_invite(self, db, owner, admin):
        grant, _ = await invitation_service.create_invite(db, owner)
        grant.invite_expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.commit()
        with pytest.raises(Expired):
            invitation_service.accept_invite(db, grant.invite_token, admin)

    async def test_duplicate_is_removed_when_already_member(self, db, owner, admin):
        make_grant(db, owner, admin, None)
        grant = AdminPermission(
            owner_id=owner.id,
            channel_id=None,
            permissions={},
            status=GrantStatus.PENDING.value,
            invite_token="dup-token",
            invite_expires_at=datetime.utcnow() + timedelta(days=1),
        )
        db.add(grant)
        db.commit()
        grant_id = grant.id

        with pytest.raises(Conflict):
            invitation_service.accept_invite(db, "dup-token", admin)
        assert db.query(AdminPermission).filter(AdminPermission.id == grant_id).count() == 0


class TestTeamApi:

    def test_invite_and_accept_over_http(self, client, db, owner, admin, channel):
        response = client.post(
            "/api/team/invite",
            json={"channel_id": channel.id, "permissions": {"can_reply": True}},
            headers=auth_headers(owner),
        )
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["invite_url"].endswith(f"/auth/accept-invite?token={body['invite_token']}")

        preview = client.get(f"/api/team/invite/{body['invite_token']}")
        assert preview.status_code == 200
        assert preview.json()["data"]["channel"]["id"] == channel.id

        accepted = client.post(f"/api/team/invite/{body['invite_token']}", headers=auth_headers(admin))
        assert accepted.status_code == 200
        assert accepted.json()["data"]["status"] == "active"

        again = client.post(f"/api/team/invite/{body['invite_token']}", headers=auth_headers(admin))
        assert again.status_code == 404

    def test_expired_invite_is_gone(self, client, db, owner, admin):
        grant = AdminPermission(
            owner_id=owner.id,
            permissions={},
            status=GrantStatus.PENDING.value,
            invite_token="old-token",
            invite_expires_at=datetime.utcnow() - timedelta(days=1),
        )
        db.add(grant)
        db.commit()

        assert client.get("/api/team/invite/old-token").status_code == 410
        response = client.post("/api/team/invite/old-token", headers=auth_headers(admin))
        assert response.status_code == 410
        assert response.json()["success"] is False

    def test_accept_requires_login(self, client):
        assert client.post("/api/team/invite/whatever").status_code == 401

    def test_owner_manages_members(self, client, db, owner, admin, channel):
        grant = make_grant(db, owner, admin, channel)
        headers = auth_headers(owner)

        listed = client.get("/api/team", headers=headers).json()["data"]
        assert [g["id"] for g in listed] == [grant.id]

        updated = client.put(
            f"/api/team/{grant.id}", json={"permissions": {"can_broadcast": True}}, headers=headers
        ).json()["data"]
        assert updated["permissions"]["can_broadcast"] is True
        assert updated["permissions"]["can_reply"] is True

        assert client.put(f"/api/team/{grant.id}", json={"status": "bogus"}, headers=headers).status_code == 400
        assert client.get(f"/api/team/{grant.id}", headers=auth_headers(admin)).status_code == 404

        memberships = client.get("/api/team/memberships", headers=auth_headers(admin)).json()["data"]
        assert memberships[0]["owner"]["id"] == owner.id

        assert client.delete(f"/api/team/{grant.id}", headers=headers).status_code == 200
        assert client.get("/api/team", headers=headers).json()["data"] == []

    def test_only_owner_cancels_invite(self, client, db, owner, admin):
        token = client.post("/api/team/invite", json={}, headers=auth_headers(owner)).json()["data"]["invite_token"]

        assert client.delete(f"/api/team/invite/{token}", headers=auth_headers(admin)).status_code == 403
        assert client.delete(f"/api/team/invite/{token}", headers=auth_headers(owner)).status_code == 200
        assert client.get(f"/api/team/invite/{token}").status_code == 404

    def test_preview_reports_whether_caller_can_accept(self, client, owner, admin):
        token = client.post("/api/team/invite", json={}, headers=auth_headers(owner)).json()["data"]["invite_token"]

        anonymous = client.get(f"/api/team/invite/{token}").json()["data"]
        assert anonymous["logged_in"] is False
        assert "can_accept" not in anonymous

        assert client.get(f"/api/team/invite/{token}", headers=auth_headers(admin)).json()["data"]["can_accept"] is True
        assert client.get(f"/api/team/invite/{token}", headers=auth_headers(owner)).json()["data"]["can_accept"] is False
