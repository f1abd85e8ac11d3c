import pytest

from conftest import make_channel, make_grant, make_user
from inboxhub.core.errors import ChannelDisabled, Forbidden, NotFound
from inboxhub.models.entities import CAPABILITIES, ChannelStatus, GrantStatus
from inboxhub.services.access_resolver import AccessResolver


class TestResolve:

    def test_owner_has_every_capability(self, db, owner, channel):
        access = AccessResolver.resolve(db, owner.id, channel)
        assert access.is_owner
        assert all(access.can(cap) for cap in CAPABILITIES)
        assert access.can("is_owner")

    def test_stranger_has_no_access(self, db, admin, channel):
        access = AccessResolver.resolve(db, admin.id, channel)
        assert not access.has_access
        assert not access.can("can_reply")

    def test_union_of_channel_and_global_grants(self, db, owner, admin, channel):
        make_grant(db, owner, admin, channel, can_reply=True)
        make_grant(db, owner, admin, None, can_reply=False, can_broadcast=True)

        access = AccessResolver.resolve(db, admin.id, channel)
        assert access.can("can_reply")
        assert access.can("can_broadcast")
        assert not access.can("can_manage_channel")
        assert not access.can("is_owner")
        assert len(access.grant_ids) == 2

    def test_global_grant_only_reaches_that_owners_channels(self, db, owner, admin, channel):
        other_owner = make_user(db, "other@example.com")
        other_channel = make_channel(db, other_owner, platform_id="1650000099")
        make_grant(db, owner, admin, None, can_reply=True)

        assert AccessResolver.resolve(db, admin.id, channel).has_access
        assert not AccessResolver.resolve(db, admin.id, other_channel).has_access

    def test_pending_and_revoked_grants_are_ignored(self, db, owner, admin, channel):
        make_grant(db, owner, admin, channel, status=GrantStatus.PENDING.value, can_reply=True)
        make_grant(db, owner, admin, None, status=GrantStatus.REVOKED.value, can_reply=True)
        assert not AccessResolver.resolve(db, admin.id, channel).has_access

    def test_revocation_applies_on_next_check(self, db, owner, admin, channel):
        grant = make_grant(db, owner, admin, channel, can_reply=True)
        assert AccessResolver.has_capability(db, admin.id, channel, "can_reply")

        grant.status = GrantStatus.REVOKED.value
        db.commit()
        assert not AccessResolver.has_capability(db, admin.id, channel, "can_reply")

    def test_unknown_capability_is_rejected(self, db, owner, channel):
        with pytest.raises(ValueError):
            AccessResolver.has_capability(db, owner.id, channel, "can_fly")


class TestRequire:

    def test_no_access_is_not_found(self, db, admin, channel):
        with pytest.raises(NotFound):
            AccessResolver.require(db, admin.id, channel)

    def test_missing_capability_is_forbidden(self, db, owner, admin, channel):
        make_grant(db, owner, admin, channel, can_reply=True)
        with pytest.raises(Forbidden):
            AccessResolver.require(db, admin.id, channel, capability="can_broadcast")

    def test_write_on_inactive_channel_is_refused_even_for_owner(self, db, owner, channel):
        channel.status = ChannelStatus.INACTIVE.value
        db.commit()

        assert AccessResolver.require(db, owner.id, channel).is_owner
        with pytest.raises(ChannelDisabled):
            AccessResolver.require(db, owner.id, channel, capability="can_reply", write=True)

    def test_get_channel_missing_id(self, db, owner):
        with pytest.raises(NotFound):
            AccessResolver.get_channel(db, owner.id, 12345)


class TestListing:

    def test_accessible_channels(self, db, owner, admin, channel):
        second = make_channel(db, owner, platform_id="1650000002")
        third_owner = make_user(db, "third@example.com")
        third = make_channel(db, third_owner, platform_id="1650000003")
        make_channel(db, third_owner, platform_id="1650000004")

        make_grant(db, owner, admin, None, can_reply=True)
        make_grant(db, third_owner, admin, third, can_reply=True)

        ids = set(AccessResolver.accessible_channel_ids(db, admin.id))
        assert ids == {channel.id, second.id, third.id}
        assert AccessResolver.accessible_owner_ids(db, admin.id) == {admin.id, owner.id, third_owner.id}

    def test_active_only_filter(self, db, owner, channel):
        make_channel(db, owner, platform_id="1650000005", status=ChannelStatus.INACTIVE.value)
        assert AccessResolver.accessible_channel_ids(db, owner.id, active_only=True) == [channel.id]

    def test_capability_map_matches_resolve(self, db, owner, admin, channel):
        second = make_channel(db, owner, platform_id="1650000006")
        make_grant(db, owner, admin, channel, can_broadcast=True)
        make_grant(db, owner, admin, None, can_reply=True)

        access_map = AccessResolver.capability_map(db, admin.id, [channel, second])
        for c in (channel, second):
            assert access_map[c.id].permissions() == AccessResolver.resolve(db, admin.id, c).permissions()
        assert access_map[channel.id].can("can_broadcast")
        assert not access_map[second.id].can("can_broadcast")

    def test_channel_audience(self, db, owner, admin, channel):
        outsider = make_user(db, "outsider@example.com")
        make_grant(db, owner, admin, channel)
        make_grant(db, owner, outsider, channel, status=GrantStatus.PENDING.value)
        assert AccessResolver.channel_audience(db, channel) == {owner.id, admin.id}

    def test_owner_capability(self, db, owner, admin):
        make_grant(db, owner, admin, None, can_manage_tags=True)
        assert AccessResolver.owner_capability(db, owner.id, owner.id, "can_manage_tags")
        assert AccessResolver.owner_capability(db, admin.id, owner.id, "can_manage_tags")
        assert not AccessResolver.owner_capability(db, owner.id, admin.id, "can_manage_tags")
