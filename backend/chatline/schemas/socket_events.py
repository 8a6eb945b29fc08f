# backend/chatline/schemas/socket_events.py
"""
Inbound socket payloads.

Field names are camelCase on the wire (``conversationId``) and snake_case in
Python.
"""

from typing import List, Optional

from pydantic import Field

from ..core.enums import ConversationType, MessageType
from ._strict_base import StrictRequestModel


class MessageSendPayload(StrictRequestModel):
    conversation_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=5000)
    type: MessageType = MessageType.TEXT
    reply_to_id: Optional[str] = None


class ConversationRefPayload(StrictRequestModel):
    """Payload of typing, read and join/leave events."""

    conversation_id: str = Field(..., min_length=1)


class ConversationCreatePayload(StrictRequestModel):
    type: ConversationType
    participant_ids: List[str] = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=100)


class UserStatusRequestPayload(StrictRequestModel):
    user_id: str = Field(..., min_length=1)
