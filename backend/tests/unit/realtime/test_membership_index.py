"""Membership cache: invalidation and the stale-fetch guard."""

import asyncio

import pytest

from chatline.core.enums import ConversationType
from chatline.core.exceptions import ConversationNotFoundException
from chatline.services.realtime.membership import ConversationMembershipIndex
from chatline.storage.memory import InMemoryDirectoryStore


class GatedStore(InMemoryDirectoryStore):
    """Holds participant reads until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.reads = 0

    async def get_participant_ids(self, conversation_id):
        snapshot = await super().get_participant_ids(conversation_id)
        self.reads += 1
        await self.gate.wait()
        return snapshot


class TestMembershipIndex:
    @pytest.mark.asyncio
    async def test_caches_until_invalidated(self, memory_store):
        group = await memory_store.create_conversation(ConversationType.GROUP, ["a", "b"], ["a"])
        index = ConversationMembershipIndex(memory_store)

        assert await index.participants_of(group.id) == frozenset({"a", "b"})
        await memory_store.add_participants(group.id, ["c"])
        assert await index.participants_of(group.id) == frozenset({"a", "b"})

        index.invalidate(group.id)
        assert await index.participants_of(group.id) == frozenset({"a", "b", "c"})
        assert await index.participant_count(group.id) == 3
        assert await index.is_participant(group.id, "c")

    @pytest.mark.asyncio
    async def test_cache_disabled_always_reads_store(self, memory_store):
        group = await memory_store.create_conversation(ConversationType.GROUP, ["a"], ["a"])
        index = ConversationMembershipIndex(memory_store, cache_enabled=False)

        await index.participants_of(group.id)
        await memory_store.add_participants(group.id, ["b"])

        assert await index.participants_of(group.id) == frozenset({"a", "b"})

    @pytest.mark.asyncio
    async def test_missing_conversation_raises(self, memory_store):
        index = ConversationMembershipIndex(memory_store)
        with pytest.raises(ConversationNotFoundException):
            await index.participants_of("missing")

    @pytest.mark.asyncio
    async def test_fetch_overlapping_invalidation_is_not_cached(self):
        store = GatedStore()
        group = await store.create_conversation(ConversationType.GROUP, ["a", "b"], ["a"])
        index = ConversationMembershipIndex(store)

        slow_read = asyncio.create_task(index.participants_of(group.id))
        while store.reads == 0:
            await asyncio.sleep(0)

        # Membership changes while the old snapshot is in flight.
        await store.remove_participants(group.id, ["b"])
        index.invalidate(group.id)
        store.gate.set()

        assert await slow_read == frozenset({"a", "b"})
        assert await index.participants_of(group.id) == frozenset({"a"})
