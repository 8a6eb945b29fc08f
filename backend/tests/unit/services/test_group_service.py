"""Group administration rules and room synchronisation."""

import asyncio

import pytest

from chatline.core.enums import ConversationType
from chatline.core.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    NotFoundException,
    NotParticipantException,
    ValidationException,
)
from chatline.schemas.records import UserRecord
from chatline.services.group_service import GroupService
from chatline.services.realtime.events import conversation_room
from chatline.services.realtime.membership import ConversationMembershipIndex
from tests._utils.realtime import connect, flush
from tests._utils.stores import YieldingStore


@pytest.fixture
def groups(hub):
    return hub.groups


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_group(self, groups):
        group = await groups.create_group(" Team ", "alice", ["bob", "carol", "bob"])

        assert group.type == ConversationType.GROUP
        assert group.name == "Team"
        assert group.participant_ids == ["alice", "bob", "carol"]
        assert group.admin_ids == ["alice"]

    @pytest.mark.asyncio
    async def test_create_group_requires_name(self, groups):
        with pytest.raises(ValidationException):
            await groups.create_group("  ", "alice", ["bob"])

    @pytest.mark.asyncio
    async def test_get_group_includes_members(self, groups, memory_store):
        await memory_store.save_user(UserRecord(id="alice", username="alice", display_name="Alice"))
        group = await groups.create_group("Team", "alice", ["ghost"])

        view = await groups.get_group(group.id, "alice")

        assert [m.id for m in view.members] == ["alice"]
        with pytest.raises(NotParticipantException):
            await groups.get_group(group.id, "mallory")

    @pytest.mark.asyncio
    async def test_direct_conversation_is_not_a_group(self, groups, memory_store):
        direct, _ = await memory_store.get_or_create_direct_conversation("alice", "bob", "alice")

        with pytest.raises(NotFoundException):
            await groups.get_group(direct.id, "alice")
        with pytest.raises(NotFoundException):
            await groups.add_member(direct.id, "carol", "alice")


class TestMembershipChanges:
    @pytest.mark.asyncio
    async def test_only_admins_mutate(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])

        with pytest.raises(ForbiddenException):
            await groups.add_member(group.id, "carol", "bob")
        with pytest.raises(ForbiddenException):
            await groups.update_group(group.id, "bob", name="Hijacked")

    @pytest.mark.asyncio
    async def test_add_member_is_idempotent(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])

        await groups.add_member(group.id, "carol", "alice")
        updated = await groups.add_member(group.id, "carol", "alice")

        assert updated.participant_ids == ["alice", "bob", "carol"]

    @pytest.mark.asyncio
    async def test_remove_member(self, groups, hub):
        group = await groups.create_group("Team", "alice", ["bob"])
        assert await hub.membership.is_participant(group.id, "bob")

        await groups.remove_member(group.id, "bob", "alice")

        assert not await hub.membership.is_participant(group.id, "bob")
        with pytest.raises(NotFoundException):
            await groups.remove_member(group.id, "bob", "alice")

    @pytest.mark.asyncio
    async def test_last_admin_leaving_promotes_successor(self, groups, memory_store):
        group = await groups.create_group("Team", "alice", ["bob", "carol"])

        await groups.leave_group(group.id, "alice")

        stored = await memory_store.get_conversation(group.id)
        assert stored.participant_ids == ["bob", "carol"]
        assert stored.admin_ids == ["bob"]

    @pytest.mark.asyncio
    async def test_leave_requires_membership(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])
        with pytest.raises(NotParticipantException):
            await groups.leave_group(group.id, "mallory")


class TestAdmins:
    @pytest.mark.asyncio
    async def test_make_and_remove_admin(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])

        assert await groups.make_admin(group.id, "bob", "alice") == ["alice", "bob"]
        assert await groups.remove_admin(group.id, "alice", "bob") == ["bob"]

    @pytest.mark.asyncio
    async def test_make_admin_requires_member(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])
        with pytest.raises(ValidationException):
            await groups.make_admin(group.id, "mallory", "alice")

    @pytest.mark.asyncio
    async def test_cannot_demote_last_admin(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])
        with pytest.raises(BusinessRuleException):
            await groups.remove_admin(group.id, "alice", "alice")

    @pytest.mark.asyncio
    async def test_update_group(self, groups):
        group = await groups.create_group("Team", "alice", ["bob"])

        updated = await groups.update_group(group.id, "alice", name="Crew", description="d")

        assert updated.name == "Crew"
        assert updated.description == "d"
        with pytest.raises(ValidationException):
            await groups.update_group(group.id, "alice", name=" ")


class TestRoomSync:
    @pytest.mark.asyncio
    async def test_added_member_joins_room_and_is_told(self, hub, groups):
        await connect(hub, "alice")
        carol, carol_sink = await connect(hub, "carol")
        group = await groups.create_group("Team", "alice", ["bob"])
        await flush(hub)
        carol_sink.clear()

        await groups.add_member(group.id, "carol", "alice")
        await flush(hub)

        assert conversation_room(group.id) in hub.router.rooms_of(carol.connection.id)
        [payload] = carol_sink.events("conversation:new")
        assert payload["id"] == group.id
        assert "carol" in payload["participantIds"]

    @pytest.mark.asyncio
    async def test_removed_member_stops_receiving_room_traffic(self, hub, groups):
        alice, alice_sink = await connect(hub, "alice")
        bob, bob_sink = await connect(hub, "bob")
        group = await groups.create_group("Team", "alice", ["bob"])

        await groups.remove_member(group.id, "bob", "alice")
        await flush(hub)
        bob_sink.clear()
        await alice.dispatch("message:send", {"conversationId": group.id, "content": "bye"})
        await flush(hub)

        assert bob_sink.events("message:new") == []
        assert len(alice_sink.events("message:new")) == 1


class TestConcurrentAdminExits:
    @pytest.fixture
    def yielding_groups(self):
        store = YieldingStore()
        return GroupService(store, ConversationMembershipIndex(store)), store

    @pytest.mark.asyncio
    async def test_admins_leaving_together_leave_a_successor(self, yielding_groups):
        groups, store = yielding_groups
        group = await groups.create_group("Team", "alice", ["bob", "carol"])
        await groups.make_admin(group.id, "bob", "alice")

        await asyncio.gather(groups.leave_group(group.id, "alice"), groups.leave_group(group.id, "bob"))

        after = await store.get_conversation(group.id)
        assert after.participant_ids == ["carol"]
        assert after.admin_ids == ["carol"]

    @pytest.mark.asyncio
    async def test_admins_removing_each_other_keep_one(self, yielding_groups):
        groups, store = yielding_groups
        group = await groups.create_group("Team", "alice", ["bob", "carol"])
        await groups.make_admin(group.id, "bob", "alice")

        results = await asyncio.gather(
            groups.remove_member(group.id, "bob", "alice"),
            groups.remove_member(group.id, "alice", "bob"),
            return_exceptions=True,
        )

        after = await store.get_conversation(group.id)
        assert after.participant_ids == ["carol"]
        assert after.admin_ids == ["carol"]
        assert results == [None, None]

    @pytest.mark.asyncio
    async def test_admins_demoting_each_other_keep_one(self, yielding_groups):
        groups, store = yielding_groups
        group = await groups.create_group("Team", "alice", ["bob"])
        await groups.make_admin(group.id, "bob", "alice")

        results = await asyncio.gather(
            groups.remove_admin(group.id, "bob", "alice"),
            groups.remove_admin(group.id, "alice", "bob"),
            return_exceptions=True,
        )

        after = await store.get_conversation(group.id)
        assert len(after.admin_ids) == 1
        assert sum(isinstance(r, BusinessRuleException) for r in results) == 1
