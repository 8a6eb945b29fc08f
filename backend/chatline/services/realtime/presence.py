# backend/chatline/services/realtime/presence.py
"""
Presence registry: which users are online, through which connections.

The registry is the single owner of the user -> connections map. It only
reports transitions (first connection in, last connection out); broadcasting
them is the session controller's job.
"""

import logging
import threading
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Set[str]] = {}

    def register(self, user_id: str, connection_id: str) -> bool:
        """Add a live connection. True iff it is the user's first."""
        with self._lock:
            connections = self._connections.setdefault(user_id, set())
            first = not connections
            connections.add(connection_id)
        if first:
            logger.debug(f"[PRESENCE] {user_id} is now online")
        return first

    def unregister(self, user_id: str, connection_id: str) -> bool:
        """
        Remove a connection. True iff it was the user's last one.

        Unknown users or connections are a no-op returning False.
        """
        with self._lock:
            connections = self._connections.get(user_id)
            if not connections or connection_id not in connections:
                return False
            connections.discard(connection_id)
            if connections:
                return False
            del self._connections[user_id]
        logger.debug(f"[PRESENCE] {user_id} is now offline")
        return True

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._connections

    def connections_of(self, user_id: str) -> Set[str]:
        """Snapshot of the user's live connection ids."""
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def online_users(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._connections.values())
