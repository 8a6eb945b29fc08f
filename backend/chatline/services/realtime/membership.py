# backend/chatline/services/realtime/membership.py
"""
Conversation membership index.

Caches each conversation's participant set in front of the directory store.
Every membership mutation calls ``invalidate``. Each key carries a version
counter: a fetch records the version before awaiting the store and only
fills the cache if no invalidation happened meanwhile, so a slow read can
never reinstate a stale participant set.
"""

import logging
import threading
from typing import Dict, FrozenSet

from ...core.exceptions import ConversationNotFoundException
from ...storage.base import DirectoryStore

logger = logging.getLogger(__name__)


class ConversationMembershipIndex:
    def __init__(self, store: DirectoryStore, cache_enabled: bool = True):
        self.store = store
        self.cache_enabled = cache_enabled
        self._lock = threading.Lock()
        self._cache: Dict[str, FrozenSet[str]] = {}
        self._versions: Dict[str, int] = {}

    async def participants_of(self, conversation_id: str) -> FrozenSet[str]:
        """
        Current participant set.

        Raises:
            ConversationNotFoundException: the conversation does not exist
        """
        with self._lock:
            cached = self._cache.get(conversation_id)
            if cached is not None:
                return cached
            version = self._versions.get(conversation_id, 0)

        participants = await self.store.get_participant_ids(conversation_id)
        if participants is None:
            raise ConversationNotFoundException(conversation_id)

        with self._lock:
            if self.cache_enabled and self._versions.get(conversation_id, 0) == version:
                self._cache[conversation_id] = participants
            else:
                logger.debug(f"[MEMBERSHIP] Skipped caching {conversation_id}; invalidated mid-fetch")
        return participants

    async def participant_count(self, conversation_id: str) -> int:
        return len(await self.participants_of(conversation_id))

    async def is_participant(self, conversation_id: str, user_id: str) -> bool:
        return user_id in await self.participants_of(conversation_id)

    def invalidate(self, conversation_id: str) -> None:
        with self._lock:
            self._versions[conversation_id] = self._versions.get(conversation_id, 0) + 1
            self._cache.pop(conversation_id, None)
