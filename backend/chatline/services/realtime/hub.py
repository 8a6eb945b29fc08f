# backend/chatline/services/realtime/hub.py
"""
RealtimeHub: the lifecycle-scoped owner of all realtime state.

One hub is created per application (in the FastAPI lifespan) and one per
test. It owns the presence registry, room router and membership index and
wires the services that share them. Nothing realtime lives in module
globals.
"""

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ...auth import JwtIdentityVerifier
from ...core.config import Settings, settings as default_settings
from ...monitoring.prometheus_metrics import prometheus_metrics
from ...storage.base import DirectoryStore
from ..group_service import GroupService
from ..message_service import MessageDeliveryEngine
from ..notification_service import NotificationService
from .membership import ConversationMembershipIndex
from .presence import PresenceRegistry
from .rooms import FrameSink, RoomRouter
from .session import ChatSession

logger = logging.getLogger(__name__)


class RealtimeHub:
    def __init__(
        self,
        store: DirectoryStore,
        verifier: Optional[JwtIdentityVerifier] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.store = store
        self.verifier = verifier or JwtIdentityVerifier(self.config)
        self.presence = PresenceRegistry()
        self.router = RoomRouter()
        self.membership = ConversationMembershipIndex(
            store, cache_enabled=self.config.membership_cache_enabled
        )
        self.messages = MessageDeliveryEngine(store, self.membership)
        self.notifications = NotificationService(store, self.presence, self.router)
        self.groups = GroupService(store, self.membership, self.presence, self.router)
        self._sessions: Dict[str, ChatSession] = {}
        self.announced_online: Set[str] = set()
        self._transition_locks: Dict[str, List[Any]] = {}

    def create_session(self, sink: FrameSink) -> ChatSession:
        """A new session in CONNECTING state; the caller drives it."""
        return ChatSession(self, sink)

    def track(self, session: ChatSession) -> None:
        if session.connection is not None:
            self._sessions[session.connection.id] = session
        self.refresh_gauges()

    def untrack(self, session: ChatSession) -> None:
        if session.connection is not None:
            self._sessions.pop(session.connection.id, None)
        self.refresh_gauges()

    def active_sessions(self) -> List[ChatSession]:
        return list(self._sessions.values())

    @asynccontextmanager
    async def presence_transition(self, user_id: str) -> AsyncIterator[None]:
        """Serialize one user's online/offline announcements. Registry mutations happen outside it."""
        entry = self._transition_locks.get(user_id)
        if entry is None:
            entry = self._transition_locks[user_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._transition_locks[user_id]

    def refresh_gauges(self) -> None:
        prometheus_metrics.set_connection_counts(
            self.router.connection_count(), len(self.presence.online_users())
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "connections": self.router.connection_count(),
            "online_users": len(self.presence.online_users()),
        }

    async def shutdown(self) -> None:
        """Disconnect every live session, then release the store."""
        sessions = self.active_sessions()
        if sessions:
            logger.info(f"[HUB] Closing {len(sessions)} live session(s)")
        for session in sessions:
            await session.disconnect()
        await self.store.close()
