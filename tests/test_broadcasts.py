from unittest.mock import AsyncMock

import pytest

from conftest import auth_headers, line_id, make_contact, make_conversation, make_grant
from inboxhub.core.errors import Conflict, ValidationError
from inboxhub.models.database import SessionLocal
from inboxhub.models.entities import (
    Broadcast,
    BroadcastRecipient,
    BroadcastStatus,
    ChannelStatus,
    FollowStatus,
    SourceType,
    Tag,
)
from inboxhub.services import broadcast_service
from inboxhub.services.channels.line import LineAPIError


def make_broadcast(db, channel, **fields):
    broadcast = Broadcast(
        channel_id=channel.id,
        message_type=fields.pop("message_type", "text"),
        content=fields.pop("content", "Hello everyone"),
        status=fields.pop("status", BroadcastStatus.DRAFT.value),
        **fields,
    )
    db.add(broadcast)
    db.commit()
    db.refresh(broadcast)
    return broadcast


class TestEligibility:

    def test_only_reachable_direct_users(self, db, channel):
        good = make_contact(db, channel, line_id(1))
        unknown = make_contact(db, channel, line_id(2), follow_status=FollowStatus.UNKNOWN.value)
        make_contact(db, channel, line_id(3), follow_status=FollowStatus.UNFOLLOWED.value)
        make_contact(db, channel, line_id(4), follow_status=FollowStatus.BLOCKED.value)
        make_contact(db, channel, line_id(5), is_blocked=True)
        make_contact(db, channel, line_id(6), is_spam=True)
        make_contact(db, channel, "C" + "0" * 32, source_type=SourceType.GROUP.value)
        make_contact(db, channel, "not-a-line-id")

        contacts = broadcast_service.eligible_contacts(db, channel.id)
        assert [c.id for c in contacts] == [good.id, unknown.id]

    def test_tag_filter(self, db, owner, channel):
        tagged = make_contact(db, channel, line_id(1))
        untagged = make_contact(db, channel, line_id(2))
        tag = Tag(owner_id=owner.id, name="VIP")
        db.add(tag)
        db.commit()
        conversation = make_conversation(db, channel, tagged)
        conversation.tags = [tag]
        make_conversation(db, channel, untagged)
        db.commit()

        contacts = broadcast_service.eligible_contacts(db, channel.id, "tagged", [tag.id])
        assert [c.id for c in contacts] == [tagged.id]
        assert broadcast_service.eligible_contacts(db, channel.id, "tagged", []) == []


class TestContent:

    def test_build_messages(self):
        assert broadcast_service.build_platform_messages(Broadcast(message_type="text", content="hi")) == [
            {"type": "text", "text": "hi"}
        ]
        with pytest.raises(ValidationError):
            broadcast_service.build_platform_messages(
                Broadcast(message_type="image", media_url="http://insecure.example.com/a.png")
            )
        with pytest.raises(ValidationError):
            broadcast_service.build_platform_messages(
                Broadcast(messages=[{"type": "text", "content": "x"}] * 6)
            )

    def test_flex_accepts_bare_bubble(self):
        messages = broadcast_service.build_platform_messages(
            Broadcast(message_type="flex", content="Promo", flex_content={"type": "bubble", "body": {}})
        )
        assert messages[0]["type"] == "flex"
        assert messages[0]["altText"] == "Promo"


class TestDispatch:

    async def test_continue_on_error_counts(self, db, notifier, owner, channel, line_client):
        contacts = [make_contact(db, channel, line_id(n)) for n in range(1, 5)]
        failing = contacts[1].line_user_id

        async def push(to, messages):
            if to == failing:
                raise LineAPIError("The user hasn't added the bot as a friend", 400)
            return {}

        line_client.push = AsyncMock(side_effect=push)
        stream = notifier.register(owner.id)
        broadcast = make_broadcast(db, channel)

        result = await broadcast_service.dispatch(db, broadcast, sent_by=owner.id, notifier=notifier)

        assert result.status == BroadcastStatus.COMPLETED.value
        assert (result.target_count, result.sent_count, result.failed_count) == (4, 3, 1)
        assert line_client.push.await_count == 4

        failed = db.query(BroadcastRecipient).filter(BroadcastRecipient.status == "failed").one()
        assert failed.line_user_id == failing
        assert "friend" in failed.error_message

        event = stream.get_nowait()
        assert event["type"] == "broadcast_completed"
        assert event["data"]["sent_count"] == 3

    async def test_all_failures_mark_failed(self, db, channel, line_client):
        make_contact(db, channel, line_id(1))
        line_client.push = AsyncMock(side_effect=LineAPIError("quota exceeded", 429))

        result = await broadcast_service.dispatch(db, make_broadcast(db, channel))
        assert result.status == BroadcastStatus.FAILED.value
        assert result.failed_count == 1

    async def test_no_recipients_completes(self, db, channel, line_client):
        result = await broadcast_service.dispatch(db, make_broadcast(db, channel))
        assert result.status == BroadcastStatus.COMPLETED.value
        assert result.target_count == 0
        line_client.push.assert_not_awaited()

    async def test_claim_is_exclusive(self, db, channel):
        broadcast = make_broadcast(db, channel, status=BroadcastStatus.SCHEDULED.value)
        assert broadcast_service.claim_for_dispatch(db, broadcast.id) is True
        assert broadcast_service.claim_for_dispatch(db, broadcast.id) is False

    async def test_lost_claim_raises_conflict(self, db, channel, line_client):
        make_contact(db, channel, line_id(1))
        broadcast = make_broadcast(db, channel)
        assert broadcast.is_dispatchable

        # Another request claims it after our status check
        other = SessionLocal()
        try:
            assert broadcast_service.claim_for_dispatch(other, broadcast.id)
        finally:
            other.close()

        with pytest.raises(Conflict):
            await broadcast_service.dispatch(db, broadcast)
        line_client.push.assert_not_awaited()
        assert db.query(BroadcastRecipient).count() == 0

    async def test_sent_broadcast_cannot_be_resent(self, db, channel, line_client):
        broadcast = make_broadcast(db, channel, status=BroadcastStatus.COMPLETED.value)
        with pytest.raises(Conflict):
            await broadcast_service.dispatch(db, broadcast)


class TestBroadcastApi:

    def test_create_send_and_list_recipients(self, client, db, owner, channel, line_client):
        make_contact(db, channel, line_id(1))
        make_contact(db, channel, line_id(2))
        headers = auth_headers(owner)

        count = client.get(f"/api/broadcasts/user-count?channel_id={channel.id}", headers=headers)
        assert count.json()["data"]["count"] == 2

        created = client.post(
            "/api/broadcasts",
            json={"channel_id": channel.id, "message_type": "text", "content": "Sale today"},
            headers=headers,
        ).json()["data"]
        assert created["status"] == "draft"

        sent = client.post(f"/api/broadcasts/{created['id']}/send", headers=headers)
        assert sent.status_code == 200
        assert sent.json()["data"]["sent_count"] == 2

        again = client.post(f"/api/broadcasts/{created['id']}/send", headers=headers)
        assert again.status_code == 400
        assert line_client.push.await_count == 2

        recipients = client.get(f"/api/broadcasts/{created['id']}/recipients", headers=headers).json()["data"]
        assert recipients["counts"] == {"total": 2, "sent": 2, "failed": 0, "pending": 0}

    def test_requires_can_broadcast(self, client, db, owner, admin, channel):
        make_grant(db, owner, admin, channel, can_reply=True)
        response = client.post(
            "/api/broadcasts",
            json={"channel_id": channel.id, "content": "hi"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 403

    def test_send_refused_on_inactive_channel(self, client, db, owner, channel, line_client):
        broadcast = make_broadcast(db, channel)
        channel.status = ChannelStatus.INACTIVE.value
        db.commit()

        response = client.post(f"/api/broadcasts/{broadcast.id}/send", headers=auth_headers(owner))
        assert response.status_code == 403
        line_client.push.assert_not_awaited()

    def test_cancel_then_send_conflicts(self, client, db, owner, channel, line_client):
        broadcast = make_broadcast(db, channel)
        headers = auth_headers(owner)
        assert client.post(f"/api/broadcasts/{broadcast.id}/cancel", headers=headers).status_code == 200
        assert client.post(f"/api/broadcasts/{broadcast.id}/send", headers=headers).status_code == 400
