"""End-to-end session behaviour against an in-memory hub."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chatline.auth import JwtIdentityVerifier
from chatline.core.enums import SessionState
from chatline.services.realtime.events import conversation_room
from chatline.services.realtime.hub import RealtimeHub
from tests._utils.realtime import RecordingSink, connect, flush, make_token
from tests._utils.stores import YieldingStore


async def _direct(hub, session, other_id):
    await session.dispatch("conversation:create", {"type": "direct", "participantIds": [other_id]})
    await flush(hub)
    [conversation] = await hub.store.list_conversations_for_user(session.user_id)
    return conversation


def _statuses_for(sink, user_id):
    return [d["isOnline"] for d in sink.events("user:status") if d["userId"] == user_id]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_bad_token_disconnects(self, hub):
        session = hub.create_session(RecordingSink())

        assert session.authenticate("garbage") is False
        assert session.state == SessionState.DISCONNECTED
        assert hub.stats() == {"connections": 0, "online_users": 0}

    @pytest.mark.asyncio
    async def test_token_signed_with_other_secret_is_rejected(self, hub):
        session = hub.create_session(RecordingSink())
        assert session.authenticate(make_token("alice", secret="wrong")) is False

    @pytest.mark.asyncio
    async def test_activation_provisions_user_and_presence(self, hub, memory_store):
        session, _ = await connect(hub, "alice", "Alice A")

        assert session.state == SessionState.ACTIVE
        user = await memory_store.get_user("alice")
        assert user.display_name == "Alice A"
        assert user.is_online is True

        await session.disconnect()
        user = await memory_store.get_user("alice")
        assert user.is_online is False
        assert user.last_seen is not None
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_activation_joins_existing_conversations(self, hub, memory_store):
        direct, _ = await memory_store.get_or_create_direct_conversation("alice", "bob", "alice")
        group = await hub.groups.create_group("Team", "carol", ["alice"])

        session, _ = await connect(hub, "alice")

        assert hub.router.rooms_of(session.connection.id) == {
            conversation_room(direct.id),
            conversation_room(group.id),
        }

    @pytest.mark.asyncio
    async def test_presence_is_announced_once_across_devices(self, hub):
        _, bob_sink = await connect(hub, "bob")
        phone, _ = await connect(hub, "alice")
        laptop, _ = await connect(hub, "alice")
        await flush(hub)
        assert _statuses_for(bob_sink, "alice") == [True]

        await phone.disconnect()
        await flush(hub)
        assert _statuses_for(bob_sink, "alice") == [True]
        assert hub.presence.is_online("alice")

        await laptop.disconnect()
        await flush(hub)
        assert _statuses_for(bob_sink, "alice") == [True, False]
        assert not hub.presence.is_online("alice")

    @pytest.mark.asyncio
    async def test_provisioning_requires_identity(self, hub, memory_store):
        session = hub.create_session(RecordingSink())

        with pytest.raises(RuntimeError):
            await session._ensure_user_record()
        with pytest.raises(RuntimeError):
            await session.activate()
        assert await memory_store.get_user("alice") is None

    @pytest.mark.asyncio
    async def test_disconnect_twice_is_harmless(self, hub):
        session, _ = await connect(hub, "alice")
        await session.disconnect()
        await session.disconnect()
        assert hub.stats()["connections"] == 0

    @pytest.mark.asyncio
    async def test_shutdown_closes_every_session(self, hub):
        await connect(hub, "alice")
        await connect(hub, "bob")

        await hub.shutdown()

        assert hub.stats() == {"connections": 0, "online_users": 0}
        assert hub.active_sessions() == []


class TestConcurrentPresence:
    @pytest.fixture
    def yielding_hub(self, test_settings):
        def build(store):
            return RealtimeHub(store, verifier=JwtIdentityVerifier(test_settings), config=test_settings)

        return build

    @pytest.mark.asyncio
    async def test_devices_connecting_together_register_once(self, yielding_hub):
        hub = yielding_hub(YieldingStore())
        _, bob_sink = await connect(hub, "bob")

        (phone, _), (laptop, _) = await asyncio.gather(connect(hub, "alice"), connect(hub, "alice"))
        await flush(hub)

        assert hub.presence.online_users().count("alice") == 1
        assert hub.presence.connections_of("alice") == {phone.connection.id, laptop.connection.id}
        assert _statuses_for(bob_sink, "alice") == [True]

    @pytest.mark.asyncio
    async def test_reconnect_during_offline_write_ends_online(self, yielding_hub):
        store = YieldingStore()
        store.offline_gate = asyncio.Event()
        hub = yielding_hub(store)
        _, bob_sink = await connect(hub, "bob")
        phone, _ = await connect(hub, "alice")

        leaving = asyncio.create_task(phone.disconnect())
        await store.offline_started.wait()
        returning = asyncio.create_task(connect(hub, "alice"))
        while not hub.presence.is_online("alice"):
            await asyncio.sleep(0)
        store.offline_gate.set()
        await leaving
        await returning
        await flush(hub)

        assert hub.presence.is_online("alice")
        assert _statuses_for(bob_sink, "alice") == [True, False, True]
        assert (await store.get_user("alice")).is_online is True

    @pytest.mark.asyncio
    async def test_reconnect_before_offline_announcement_sends_nothing(self, yielding_hub):
        hub = yielding_hub(YieldingStore())
        _, bob_sink = await connect(hub, "bob")
        phone, _ = await connect(hub, "alice")

        async with hub.presence_transition("alice"):
            leaving = asyncio.create_task(phone.disconnect())
            await asyncio.sleep(0)
            assert not hub.presence.is_online("alice")
            returning = asyncio.create_task(connect(hub, "alice"))
            while not hub.presence.is_online("alice"):
                await asyncio.sleep(0)
        await leaving
        laptop, _ = await returning
        await flush(hub)

        assert _statuses_for(bob_sink, "alice") == [True]
        assert hub.presence.connections_of("alice") == {laptop.connection.id}


class TestMessaging:
    @pytest.mark.asyncio
    async def test_conversation_create_reaches_both_sides(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        _, bob_sink = await connect(hub, "bob")

        conversation = await _direct(hub, alice, "bob")

        assert [d["id"] for d in alice_sink.events("conversation:new")] == [conversation.id]
        assert [d["id"] for d in bob_sink.events("conversation:new")] == [conversation.id]

    @pytest.mark.asyncio
    async def test_message_reaches_room_including_senders_devices(self, hub, memory_store):
        alice, alice_sink = await connect(hub, "alice")
        _, alice_tablet_sink = await connect(hub, "alice")
        _, bob_sink = await connect(hub, "bob")
        conversation = await _direct(hub, alice, "bob")

        await alice.dispatch("message:send", {"conversationId": conversation.id, "content": "hi bob"})
        await flush(hub)

        for sink in (alice_sink, alice_tablet_sink, bob_sink):
            [message] = sink.events("message:new")
            assert message["content"] == "hi bob"
            assert message["status"] == "sent"
            assert message["readBy"] == ["alice"]
            assert message["sender"]["id"] == "alice"

        [note] = bob_sink.events("notification:new")
        assert note["title"] == "Alice"
        assert alice_sink.events("notification:new") == []
        assert (await memory_store.get_conversation(conversation.id)).last_message_id == message["id"]

    @pytest.mark.asyncio
    async def test_offline_recipient_still_gets_stored_notification(self, hub, memory_store):
        alice, _ = await connect(hub, "alice")
        conversation = await _direct(hub, alice, "bob")

        await alice.dispatch("message:send", {"conversationId": conversation.id, "content": "later"})

        [note] = await memory_store.list_notifications("bob")
        assert note.body == "later"

    @pytest.mark.asyncio
    async def test_typing_is_not_echoed_to_sending_connection(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        _, alice_tablet_sink = await connect(hub, "alice")
        _, bob_sink = await connect(hub, "bob")
        conversation = await _direct(hub, alice, "bob")

        await alice.dispatch("typing:start", {"conversationId": conversation.id})
        await alice.dispatch("typing:stop", {"conversationId": conversation.id})
        await flush(hub)

        assert alice_sink.events("typing:update") == []
        assert [d["isTyping"] for d in bob_sink.events("typing:update")] == [True, False]
        assert len(alice_tablet_sink.events("typing:update")) == 2
        assert bob_sink.events("typing:update")[0]["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_read_receipts_between_two_users(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        bob, bob_sink = await connect(hub, "bob")
        conversation = await _direct(hub, alice, "bob")
        await alice.dispatch("message:send", {"conversationId": conversation.id, "content": "one"})
        await alice.dispatch("message:send", {"conversationId": conversation.id, "content": "two"})
        await flush(hub)
        sent_ids = [m["id"] for m in alice_sink.events("message:new")]

        await bob.dispatch("messages:read", {"conversationId": conversation.id})
        await bob.dispatch("messages:read", {"conversationId": conversation.id})
        await flush(hub)

        [seen] = alice_sink.events("messages:seen")
        assert seen == {"conversationId": conversation.id, "userId": "bob", "messageIds": sent_ids}
        assert bob_sink.events("messages:seen") == []

        history = await hub.messages.get_conversation_messages(conversation.id, "alice")
        assert [m.status.value for m in history] == ["seen", "seen"]

    @pytest.mark.asyncio
    async def test_group_status_moves_from_delivered_to_seen(self, hub):
        alice, _ = await connect(hub, "alice")
        bob, _ = await connect(hub, "bob")
        carol, _ = await connect(hub, "carol")
        await alice.dispatch(
            "conversation:create",
            {"type": "group", "participantIds": ["bob", "carol"], "name": "Trio"},
        )
        [group] = await hub.store.list_conversations_for_user("alice")
        await alice.dispatch("message:send", {"conversationId": group.id, "content": "hey all"})

        await bob.dispatch("messages:read", {"conversationId": group.id})
        [view] = await hub.messages.get_conversation_messages(group.id, "alice")
        assert view.status.value == "delivered"

        await carol.dispatch("messages:read", {"conversationId": group.id})
        [view] = await hub.messages.get_conversation_messages(group.id, "alice")
        assert view.status.value == "seen"

    @pytest.mark.asyncio
    async def test_left_room_gets_no_broadcasts(self, hub):
        alice, _ = await connect(hub, "alice")
        bob, bob_sink = await connect(hub, "bob")
        conversation = await _direct(hub, alice, "bob")

        await bob.dispatch("conversation:leave", {"conversationId": conversation.id})
        await alice.dispatch("typing:start", {"conversationId": conversation.id})
        await flush(hub)
        assert bob_sink.events("typing:update") == []

        await bob.dispatch("conversation:join", {"conversationId": conversation.id})
        await alice.dispatch("typing:start", {"conversationId": conversation.id})
        await flush(hub)
        assert len(bob_sink.events("typing:update")) == 1

    @pytest.mark.asyncio
    async def test_fan_out_failure_does_not_reach_sender(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        conversation = await _direct(hub, alice, "bob")

        with patch.object(
            hub.notifications, "fan_out_message", AsyncMock(side_effect=RuntimeError("queue down"))
        ):
            await alice.dispatch("message:send", {"conversationId": conversation.id, "content": "x"})
        await flush(hub)

        assert len(alice_sink.events("message:new")) == 1
        assert alice_sink.events("error") == []


class TestPresenceQueries:
    @pytest.mark.asyncio
    async def test_online_list(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        await connect(hub, "bob")

        await alice.dispatch("users:online:request", None)
        await flush(hub)

        [listing] = alice_sink.events("users:online:list")
        assert sorted(entry["userId"] for entry in listing) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_status_request(self, hub):
        alice, alice_sink = await connect(hub, "alice")
        bob, _ = await connect(hub, "bob")
        await bob.disconnect()

        await alice.dispatch("user:status:request", {"userId": "bob"})
        await alice.dispatch("user:status:request", {"userId": "nobody"})
        await flush(hub)

        bob_status, nobody_status = alice_sink.events("user:status:response")
        assert bob_status["isOnline"] is False
        assert bob_status["lastSeen"] is not None
        assert nobody_status == {"userId": "nobody", "isOnline": False, "lastSeen": None}


class TestErrors:
    async def _errors_after(self, hub, session, sink, event, data):
        sink.clear()
        await session.dispatch(event, data)
        await flush(hub)
        return [d["message"] for d in sink.events("error")]

    @pytest.mark.asyncio
    async def test_unknown_event(self, hub):
        alice, sink = await connect(hub, "alice")
        assert await self._errors_after(hub, alice, sink, "bogus:event", {}) == ["Unknown event: bogus:event"]

    @pytest.mark.asyncio
    async def test_invalid_payload(self, hub):
        alice, sink = await connect(hub, "alice")
        assert await self._errors_after(hub, alice, sink, "message:send", {"content": "x"}) == [
            "Invalid payload for message:send"
        ]

    @pytest.mark.asyncio
    async def test_non_participant_is_refused(self, hub):
        alice, _ = await connect(hub, "alice")
        mallory, mallory_sink = await connect(hub, "mallory")
        conversation = await _direct(hub, alice, "bob")

        for event, data in (
            ("message:send", {"conversationId": conversation.id, "content": "hi"}),
            ("typing:start", {"conversationId": conversation.id}),
            ("messages:read", {"conversationId": conversation.id}),
            ("conversation:join", {"conversationId": conversation.id}),
        ):
            assert await self._errors_after(hub, mallory, mallory_sink, event, data) == [
                "You are not a participant of this conversation"
            ]
        assert conversation_room(conversation.id) not in hub.router.rooms_of(mallory.connection.id)
        assert await hub.store.list_messages(conversation.id) == []

    @pytest.mark.asyncio
    async def test_missing_conversation(self, hub):
        alice, sink = await connect(hub, "alice")
        assert await self._errors_after(
            hub, alice, sink, "message:send", {"conversationId": "missing", "content": "hi"}
        ) == ["Conversation not found"]

    @pytest.mark.asyncio
    async def test_invalid_direct_creation(self, hub):
        alice, sink = await connect(hub, "alice")
        errors = await self._errors_after(
            hub, alice, sink, "conversation:create", {"type": "direct", "participantIds": ["b", "c"]}
        )
        assert errors == ["A direct conversation needs exactly one other participant"]

    @pytest.mark.asyncio
    async def test_unexpected_failure_gets_generic_message(self, hub):
        alice, sink = await connect(hub, "alice")
        conversation = await _direct(hub, alice, "bob")

        with patch.object(
            hub.messages, "send_message", AsyncMock(side_effect=RuntimeError("db exploded"))
        ):
            errors = await self._errors_after(
                hub, alice, sink, "message:send", {"conversationId": conversation.id, "content": "hi"}
            )

        assert errors == ["Failed to send message"]
        assert sink.events("message:new") == []

    @pytest.mark.asyncio
    async def test_malformed_frame_keeps_session_open(self, hub):
        alice, sink = await connect(hub, "alice")

        await alice.handle_frame("{not json")
        await alice.handle_frame('{"event": "users:online:request"}')
        await flush(hub)

        assert sink.events("error") == [{"message": "Malformed event frame"}]
        assert len(sink.events("users:online:list")) == 1
        assert alice.state == SessionState.ACTIVE
