# backend/chatline/core/enums.py
"""
Core enums for Chatline.

String-valued so they serialize directly into JSON frames and database
columns.
"""

from enum import Enum


class ConversationType(str, Enum):
    """Kinds of conversation containers."""

    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    """Content kinds a message can carry."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    VOICE = "voice"


class MessageStatus(str, Enum):
    """
    Derived delivery status of a message.

    Never stored: always computed from the size of ``read_by`` and the
    conversation's current participant count.
    """

    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"


class NotificationType(str, Enum):
    MESSAGE = "message"
    GROUP_INVITE = "group_invite"
    MENTION = "mention"
    SYSTEM = "system"


class SessionState(str, Enum):
    """Lifecycle states of a realtime session."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
