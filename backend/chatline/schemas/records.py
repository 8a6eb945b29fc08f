# backend/chatline/schemas/records.py
"""
Directory records.

Both directory store implementations return these value objects, so the
messaging core never touches ORM instances or raw dicts.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..core.enums import ConversationType, MessageStatus, MessageType, NotificationType
from ._strict_base import StrictModel


class UserRecord(StrictModel):
    id: str
    username: str
    display_name: str
    profile_picture: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username


class ConversationRecord(StrictModel):
    """A direct or group conversation and its current membership."""

    id: str
    type: ConversationType
    participant_ids: List[str] = Field(default_factory=list)
    admin_ids: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    description: Optional[str] = None
    picture: Optional[str] = None
    created_by: Optional[str] = None
    last_message_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_group(self) -> bool:
        return self.type == ConversationType.GROUP

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    def other_participant_id(self, user_id: str) -> Optional[str]:
        """Return the counterpart in a direct conversation."""
        others = [pid for pid in self.participant_ids if pid != user_id]
        return others[0] if others else None


class MessageRecord(StrictModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    reply_to_id: Optional[str] = None
    created_at: datetime
    read_by: List[str] = Field(default_factory=list)


class SenderSummary(StrictModel):
    id: str
    username: str
    display_name: str
    profile_picture: Optional[str] = None


class MessageView(MessageRecord):
    """A message plus its delivery status, derived at read time."""

    status: MessageStatus
    sender: Optional[SenderSummary] = None


class NotificationRecord(StrictModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime


class GroupView(ConversationRecord):
    """A group with its members' profiles, as returned to participants."""

    members: List[UserRecord] = Field(default_factory=list)
