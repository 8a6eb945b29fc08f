# backend/chatline/storage/base.py
"""
Directory store interface.

The messaging core is written once against this interface. Two
implementations exist: ``InMemoryDirectoryStore`` (tests, local runs) and
``SqlDirectoryStore`` (SQLAlchemy). The backend is chosen only at the
composition root (``build_directory_store``).

Every set-valued field (``read_by``, participants, admins) is mutated through
atomic add/remove operations; callers never read-modify-write these sets.

Storage failures surface as ``RepositoryException``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Tuple

from ..core.enums import ConversationType, MessageType, NotificationType
from ..schemas.records import ConversationRecord, MessageRecord, NotificationRecord, UserRecord


def direct_pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key identifying the direct conversation of a pair."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class DirectoryStore(ABC):
    """Abstract data access for users, conversations, messages and notifications."""

    # Users

    @abstractmethod
    async def save_user(self, user: UserRecord) -> UserRecord:
        """Insert or replace a user record."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Return the user or None."""

    @abstractmethod
    async def set_user_presence(
        self, user_id: str, is_online: bool, last_seen: datetime
    ) -> None:
        """Persist the online flag and last-seen timestamp. Unknown users are ignored."""

    # Conversations

    @abstractmethod
    async def create_conversation(
        self,
        conversation_type: ConversationType,
        participant_ids: Iterable[str],
        admin_ids: Iterable[str],
        created_by: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> ConversationRecord:
        """Create a conversation. Use ``get_or_create_direct_conversation`` for direct chats."""

    @abstractmethod
    async def get_or_create_direct_conversation(
        self, user_a: str, user_b: str, created_by: Optional[str] = None
    ) -> Tuple[ConversationRecord, bool]:
        """
        Return the direct conversation for the unordered pair, creating it if needed.

        Must be atomic: concurrent calls for the same pair (in either order)
        yield the same conversation, and exactly one of them reports created=True.
        """

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Return the conversation or None."""

    @abstractmethod
    async def list_conversations_for_user(self, user_id: str) -> List[ConversationRecord]:
        """Conversations the user participates in, most recently updated first."""

    @abstractmethod
    async def get_participant_ids(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        """Current participant set, or None if the conversation does not exist."""

    @abstractmethod
    async def add_participants(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        """Set-union users into participants. False if the conversation does not exist."""

    @abstractmethod
    async def remove_participants(
        self, conversation_id: str, user_ids: Iterable[str], keep_admin: bool = False
    ) -> bool:
        """
        Remove users from participants and admins. False if the conversation does not exist.

        With ``keep_admin``, if participants remain but no admin does, the
        earliest-joined remaining participant is promoted in the same atomic step.
        """

    @abstractmethod
    async def add_admins(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        """Set-union participants into admins. Non-participants are ignored."""

    @abstractmethod
    async def remove_admins(
        self, conversation_id: str, user_ids: Iterable[str], keep_one: bool = False
    ) -> bool:
        """
        Remove users from the admin set. False if the conversation does not exist.

        With ``keep_one``, a removal that would leave no admin changes nothing
        and returns False.
        """

    @abstractmethod
    async def update_conversation_details(
        self,
        conversation_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> Optional[ConversationRecord]:
        """Update group metadata; None values leave fields untouched."""

    @abstractmethod
    async def touch_conversation(
        self, conversation_id: str, last_message_id: str, updated_at: datetime
    ) -> None:
        """Point the conversation at its newest message."""

    # Messages

    @abstractmethod
    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
    ) -> MessageRecord:
        """Persist a message whose ``read_by`` starts as exactly ``{sender_id}``."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        """Return the message or None."""

    @abstractmethod
    async def list_messages(
        self, conversation_id: str, limit: int = 50, before: Optional[datetime] = None
    ) -> List[MessageRecord]:
        """The newest ``limit`` messages (older than ``before``), oldest first."""

    @abstractmethod
    async def add_reader(self, conversation_id: str, user_id: str) -> List[str]:
        """
        Add ``user_id`` to ``read_by`` of every message in the conversation sent by
        someone else that does not already contain it.

        Atomic set union. Returns the ids of the messages this call changed, so
        a repeated call returns an empty list.
        """

    # Notifications

    @abstractmethod
    async def create_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> NotificationRecord:
        """Persist an unread notification."""

    @abstractmethod
    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[NotificationRecord]:
        """Newest first."""

    @abstractmethod
    async def count_unread_notifications(self, user_id: str) -> int:
        """Number of unread notifications for the user."""

    @abstractmethod
    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        """True if the user's notification exists (and is now read)."""

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int:
        """Mark every unread notification read; returns how many changed."""

    @abstractmethod
    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        """True if the user's notification existed and was deleted."""

    async def close(self) -> None:
        """Release any resources held by the store."""
