# backend/chatline/services/realtime/sync.py
"""Keep live connections' rooms in step with conversation membership changes."""

from typing import Iterable, Set

from .presence import PresenceRegistry
from .rooms import RoomRouter


def join_users_to_room(
    presence: PresenceRegistry, router: RoomRouter, user_ids: Iterable[str], room_id: str
) -> Set[str]:
    """Join every live connection of ``user_ids`` to the room. Returns the connection ids joined."""
    joined: Set[str] = set()
    for user_id in set(user_ids):
        for connection_id in presence.connections_of(user_id):
            if router.join(connection_id, room_id):
                joined.add(connection_id)
    return joined


def remove_users_from_room(
    presence: PresenceRegistry, router: RoomRouter, user_ids: Iterable[str], room_id: str
) -> None:
    for user_id in set(user_ids):
        for connection_id in presence.connections_of(user_id):
            router.leave(connection_id, room_id)
