# backend/chatline/services/realtime/events.py
"""
Socket event names and frame builders.

Every frame on the wire is a JSON object:
{
    "event": str,   # Event name, e.g. "message:new"
    "data": object  # Event-specific payload (camelCase keys)
}
"""

from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, Dict, Iterable, List, Optional


class InboundEvent(str, Enum):
    """Events a client may send."""

    MESSAGE_SEND = "message:send"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    MESSAGES_READ = "messages:read"
    CONVERSATION_CREATE = "conversation:create"
    CONVERSATION_JOIN = "conversation:join"
    CONVERSATION_LEAVE = "conversation:leave"
    USERS_ONLINE_REQUEST = "users:online:request"
    USER_STATUS_REQUEST = "user:status:request"


class OutboundEvent(str, Enum):
    """Events the server sends."""

    MESSAGE_NEW = "message:new"
    TYPING_UPDATE = "typing:update"
    MESSAGES_SEEN = "messages:seen"
    CONVERSATION_NEW = "conversation:new"
    NOTIFICATION_NEW = "notification:new"
    USER_STATUS = "user:status"
    USERS_ONLINE_LIST = "users:online:list"
    USER_STATUS_RESPONSE = "user:status:response"
    ERROR = "error"


def conversation_room(conversation_id: str) -> str:
    """Room name for a conversation."""
    return f"conversation:{conversation_id}"


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, ensure_ascii=False)


def decode_frame(raw: str) -> tuple[str, Any]:
    """
    Parse an inbound frame.

    Raises:
        ValueError: if the frame is not a JSON object with a string "event"
    """
    parsed = json.loads(raw)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("event"), str):
        raise ValueError("frame must be an object with an 'event' string")
    return parsed["event"], parsed.get("data")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_user_status(user_id: str, is_online: bool, last_seen: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "userId": user_id,
        "isOnline": is_online,
        "lastSeen": _iso(last_seen or datetime.now(timezone.utc)),
    }


def build_typing_update(conversation_id: str, user_id: str, is_typing: bool) -> Dict[str, Any]:
    return {"conversationId": conversation_id, "userId": user_id, "isTyping": is_typing}


def build_messages_seen(conversation_id: str, user_id: str, message_ids: List[str]) -> Dict[str, Any]:
    return {"conversationId": conversation_id, "userId": user_id, "messageIds": list(message_ids)}


def build_online_list(user_ids: Iterable[str], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    stamp = _iso(now or datetime.now(timezone.utc))
    return [{"userId": user_id, "lastSeen": stamp} for user_id in user_ids]


def build_status_response(user_id: str, is_online: bool, last_seen: Optional[datetime]) -> Dict[str, Any]:
    return {"userId": user_id, "isOnline": is_online, "lastSeen": _iso(last_seen)}


def build_error(message: str) -> Dict[str, Any]:
    return {"message": message}
