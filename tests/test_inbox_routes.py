from unittest.mock import AsyncMock

from conftest import (
    auth_headers,
    line_id,
    make_channel,
    make_contact,
    make_conversation,
    make_grant,
    make_user,
)
from inboxhub.models.entities import Message, Tag, User
from inboxhub.services.channels.line import LineAPIError


class TestChannels:

    def test_create_list_and_duplicate(self, client, owner, line_client):
        headers = auth_headers(owner)
        body = {
            "channel_name": "Shop",
            "channel_id": "1650000777",
            "channel_secret": "s",
            "channel_access_token": "t",
        }
        created = client.post("/api/channels", json=body, headers=headers)
        assert created.status_code == 200
        data = created.json()["data"]
        assert data["basic_id"] == "@bot"
        assert "channel_secret" not in data and "channel_access_token" not in data

        assert client.post("/api/channels", json=body, headers=headers).status_code == 400
        listed = client.get("/api/channels", headers=headers).json()["data"]
        assert listed[0]["is_owner"] is True

    def test_bot_info_failure_does_not_block_creation(self, client, owner, line_client):
        line_client.get_channel_info = AsyncMock(side_effect=LineAPIError("Authentication failed", 401))
        response = client.post("/api/channels", json={
            "channel_name": "Shop", "channel_id": "1650000778",
            "channel_secret": "s", "channel_access_token": "t",
        }, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["data"]["basic_id"] is None

    def test_team_account_cannot_own_channels(self, client, db):
        pending = User.create_pending(db, "team@example.com")
        pending.status = "active"
        db.commit()
        response = client.post("/api/channels", json={
            "channel_name": "x", "channel_id": "1", "channel_secret": "s", "channel_access_token": "t",
        }, headers=auth_headers(pending))
        assert response.status_code == 403

    def test_outsider_sees_404_and_delegate_cannot_delete(self, client, db, owner, admin, channel):
        outsider = make_user(db, "outsider@example.com")
        assert client.get(f"/api/channels/{channel.id}", headers=auth_headers(outsider)).status_code == 404

        make_grant(db, owner, admin, channel, can_manage_channel=True)
        headers = auth_headers(admin)
        assert client.get(f"/api/channels/{channel.id}", headers=headers).status_code == 200
        assert client.put(f"/api/channels/{channel.id}", json={"channel_name": "Renamed"},
                          headers=headers).status_code == 200
        assert client.put(f"/api/channels/{channel.id}", json={"status": "inactive"},
                          headers=headers).status_code == 403
        assert client.delete(f"/api/channels/{channel.id}", headers=headers).status_code == 403
        assert client.delete(f"/api/channels/{channel.id}", headers=auth_headers(owner)).status_code == 200

    def test_channel_admins(self, client, db, owner, admin, channel):
        make_grant(db, owner, admin, None)
        data = client.get(f"/api/channels/{channel.id}/admins", headers=auth_headers(owner)).json()["data"]
        assert data["owner"]["id"] == owner.id
        assert [g["admin"]["id"] for g in data["admins"]] == [admin.id]


class TestConversations:

    def test_visibility_without_view_all(self, client, db, owner, admin, channel):
        colleague = make_user(db, "colleague@example.com")
        make_grant(db, owner, admin, channel, can_reply=True)
        make_grant(db, owner, colleague, channel, can_reply=True)
        mine = make_conversation(db, channel, make_contact(db, channel, line_id(1)), assigned_to=admin.id)
        open_ = make_conversation(db, channel, make_contact(db, channel, line_id(2)))
        theirs = make_conversation(db, channel, make_contact(db, channel, line_id(3)), assigned_to=colleague.id)

        ids = {c["id"] for c in client.get("/api/messages/conversations",
                                           headers=auth_headers(admin)).json()["data"]}
        assert ids == {mine.id, open_.id}
        assert client.get(f"/api/messages/conversations/{theirs.id}",
                          headers=auth_headers(admin)).status_code == 404

        ids = {c["id"] for c in client.get("/api/messages/conversations",
                                           headers=auth_headers(owner)).json()["data"]}
        assert ids == {mine.id, open_.id, theirs.id}

    def test_history_pagination_and_read(self, client, db, owner, channel):
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)), unread_count=3)
        for n in range(3):
            db.add(Message(conversation_id=conversation.id, channel_id=channel.id,
                           contact_id=conversation.contact_id, direction="incoming",
                           message_type="text", content=f"m{n}"))
        db.commit()
        headers = auth_headers(owner)

        page = client.get(f"/api/messages/conversations/{conversation.id}?limit=2", headers=headers).json()["data"]
        assert [m["content"] for m in page["messages"]] == ["m1", "m2"]
        assert page["has_more"] is True

        older = client.get(
            f"/api/messages/conversations/{conversation.id}?limit=2&before={page['messages'][0]['id']}",
            headers=headers,
        ).json()["data"]
        assert [m["content"] for m in older["messages"]] == ["m0"]
        assert older["has_more"] is False

        read = client.post(f"/api/messages/conversations/{conversation.id}/read", headers=headers).json()["data"]
        assert read == {"id": conversation.id, "status": "read", "unread_count": 0}

    def test_send_failure_reports_platform_message(self, client, db, owner, channel, line_client):
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))
        line_client.push = AsyncMock(side_effect=LineAPIError("Invalid reply token", 400))

        response = client.post("/api/messages/send", json={
            "conversation_id": conversation.id, "message_type": "text", "content": "hello",
        }, headers=auth_headers(owner))
        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Cannot send message: Invalid reply token"}
        assert db.query(Message).count() == 0

    def test_send_succeeds_when_notifier_is_down(self, client, db, notifier, owner, channel, line_client,
                                                 monkeypatch):
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))
        publish = AsyncMock(side_effect=ConnectionError("redis down"))
        monkeypatch.setattr(notifier, "publish", publish)

        response = client.post("/api/messages/send", json={
            "conversation_id": conversation.id, "message_type": "text", "content": "hello",
        }, headers=auth_headers(owner))
        assert response.status_code == 200, response.text
        assert db.query(Message).count() == 1
        line_client.push.assert_awaited_once()
        publish.assert_awaited()

    def test_send_validates_media_https(self, client, db, owner, channel, line_client):
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))
        response = client.post("/api/messages/send", json={
            "conversation_id": conversation.id, "message_type": "image", "media_url": "http://x/a.png",
        }, headers=auth_headers(owner))
        assert response.status_code == 400
        line_client.push.assert_not_awaited()

    def test_status_update_notifies_audience(self, client, db, notifier, owner, admin, channel):
        make_grant(db, owner, admin, channel, can_reply=True)
        stream = notifier.register(owner.id)
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))

        response = client.put(f"/api/messages/conversations/{conversation.id}/status",
                              json={"status": "processing"}, headers=auth_headers(admin))
        assert response.status_code == 200
        assert stream.get_nowait()["data"]["conversation"]["status"] == "processing"

        bad = client.put(f"/api/messages/conversations/{conversation.id}/status",
                         json={"status": "archived"}, headers=auth_headers(admin))
        assert bad.status_code == 400

    def test_assignment_must_be_in_audience(self, client, db, owner, admin, channel):
        make_grant(db, owner, admin, channel)
        outsider = make_user(db, "outsider@example.com")
        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))
        headers = auth_headers(owner)

        ok = client.put(f"/api/messages/conversations/{conversation.id}",
                        json={"assigned_to": admin.id, "notes": "VIP"}, headers=headers)
        assert ok.json()["data"]["assigned_to"]["id"] == admin.id
        assert ok.json()["data"]["notes"] == "VIP"

        bad = client.put(f"/api/messages/conversations/{conversation.id}",
                         json={"assigned_to": outsider.id}, headers=headers)
        assert bad.status_code == 400


class TestTagsAndQuickReplies:

    def test_tags_are_shared_with_team(self, client, db, owner, admin, channel):
        make_grant(db, owner, admin, None, can_manage_tags=False)
        created = client.post("/api/tags", json={"name": "VIP"}, headers=auth_headers(owner)).json()["data"]
        assert client.post("/api/tags", json={"name": "VIP"}, headers=auth_headers(owner)).status_code == 400

        listed = client.get("/api/tags", headers=auth_headers(admin)).json()["data"]
        assert [t["id"] for t in listed] == [created["id"]]
        assert client.put(f"/api/tags/{created['id']}", json={"color": "#000"},
                          headers=auth_headers(admin)).status_code == 403

        conversation = make_conversation(db, channel, make_contact(db, channel, line_id(1)))
        tagged = client.put(f"/api/messages/conversations/{conversation.id}/tags",
                            json={"tag_ids": [created["id"]]}, headers=auth_headers(owner))
        assert [t["id"] for t in tagged.json()["data"]] == [created["id"]]

    def test_tags_survive_channel_deletion(self, client, db, owner, channel):
        tag = Tag(owner_id=owner.id, name="Keep")
        db.add(tag)
        db.commit()
        client.delete(f"/api/channels/{channel.id}", headers=auth_headers(owner))
        assert client.get("/api/tags", headers=auth_headers(owner)).json()["data"][0]["name"] == "Keep"

    def test_quick_reply_lifecycle(self, client, db, owner, admin, channel):
        headers = auth_headers(owner)
        too_many = [{"type": "text", "content": "x"}] * 6
        assert client.post("/api/quick-replies", json={
            "channel_id": channel.id, "title": "Greeting", "messages": too_many,
        }, headers=headers).status_code == 400

        created = client.post("/api/quick-replies", json={
            "channel_id": channel.id, "title": "Greeting", "shortcut": "/hi",
            "messages": [{"type": "text", "content": "Hello!"}],
        }, headers=headers).json()["data"]

        make_grant(db, owner, admin, channel, can_reply=False)
        listed = client.get(f"/api/quick-replies?channel_id={channel.id}", headers=auth_headers(admin)).json()
        assert [q["id"] for q in listed["data"]] == [created["id"]]
        assert client.delete(f"/api/quick-replies/{created['id']}",
                             headers=auth_headers(admin)).status_code == 403

        used = client.post(f"/api/quick-replies/{created['id']}/use", headers=auth_headers(admin)).json()["data"]
        assert used["use_count"] == 1


def test_dashboard_stats(client, db, owner, channel):
    other = make_channel(db, owner, platform_id="1650000002", status="inactive")
    make_conversation(db, channel, make_contact(db, channel, line_id(1)), unread_count=2)
    make_conversation(db, other, make_contact(db, other, line_id(2)), status="completed")

    data = client.get("/api/dashboard/stats", headers=auth_headers(owner)).json()["data"]
    assert data["channels"] == {"total": 2, "active": 1}
    assert data["conversations"]["total"] == 2
    assert data["conversations"]["by_status"]["unread"] == 1
    assert data["conversations"]["by_status"]["completed"] == 1
    assert data["unread_total"] == 2
