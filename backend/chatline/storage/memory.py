# backend/chatline/storage/memory.py
"""
In-memory directory store.

Used by the test suite and for local runs without a database. All state is
guarded by one lock; no method awaits while holding it, so it is safe both
on the event loop and from worker threads.
"""

from datetime import datetime, timezone
import logging
import threading
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..core.enums import ConversationType, MessageType, NotificationType
from ..core.ulid_helper import generate_ulid
from ..schemas.records import ConversationRecord, MessageRecord, NotificationRecord, UserRecord
from .base import DirectoryStore, direct_pair_key

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDirectoryStore(DirectoryStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._conversations: Dict[str, Dict[str, Any]] = {}
        self._direct_index: Dict[str, str] = {}
        self._messages: Dict[str, Dict[str, Any]] = {}
        self._messages_by_conversation: Dict[str, List[str]] = {}
        self._notifications: Dict[str, Dict[str, Any]] = {}

    # Users

    async def save_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._users[user.id] = user.model_dump()
            return UserRecord(**self._users[user.id])

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            row = self._users.get(user_id)
            return UserRecord(**row) if row else None

    async def set_user_presence(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        with self._lock:
            row = self._users.get(user_id)
            if row is None:
                logger.debug(f"[MEMORY-STORE] Presence update for unknown user {user_id}")
                return
            row["is_online"] = is_online
            row["last_seen"] = last_seen

    # Conversations

    def _conversation_record(self, row: Dict[str, Any]) -> ConversationRecord:
        return ConversationRecord(
            **{
                **row,
                "participant_ids": list(row["participant_ids"]),
                "admin_ids": list(row["admin_ids"]),
            }
        )

    def _insert_conversation(
        self,
        conversation_type: ConversationType,
        participant_ids: Iterable[str],
        admin_ids: Iterable[str],
        created_by: Optional[str],
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> Dict[str, Any]:
        participants = list(dict.fromkeys(participant_ids))
        admins = [uid for uid in dict.fromkeys(admin_ids) if uid in participants]
        now = _now()
        row: Dict[str, Any] = {
            "id": generate_ulid(),
            "type": conversation_type,
            "participant_ids": participants,
            "admin_ids": admins,
            "name": name,
            "description": description,
            "picture": picture,
            "created_by": created_by,
            "last_message_id": None,
            "created_at": now,
            "updated_at": now,
        }
        self._conversations[row["id"]] = row
        self._messages_by_conversation[row["id"]] = []
        return row

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
        with self._lock:
            row = self._insert_conversation(
                conversation_type,
                participant_ids,
                admin_ids,
                created_by,
                name=name,
                description=description,
                picture=picture,
            )
            return self._conversation_record(row)

    async def get_or_create_direct_conversation(
        self, user_a: str, user_b: str, created_by: Optional[str] = None
    ) -> Tuple[ConversationRecord, bool]:
        key = direct_pair_key(user_a, user_b)
        with self._lock:
            existing_id = self._direct_index.get(key)
            if existing_id is not None:
                return self._conversation_record(self._conversations[existing_id]), False
            row = self._insert_conversation(
                ConversationType.DIRECT,
                [user_a, user_b],
                [created_by] if created_by else [],
                created_by,
            )
            self._direct_index[key] = row["id"]
            return self._conversation_record(row), True

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._lock:
            row = self._conversations.get(conversation_id)
            return self._conversation_record(row) if row else None

    async def list_conversations_for_user(self, user_id: str) -> List[ConversationRecord]:
        with self._lock:
            rows = [r for r in self._conversations.values() if user_id in r["participant_ids"]]
            rows.sort(key=lambda r: r["updated_at"], reverse=True)
            return [self._conversation_record(r) for r in rows]

    async def get_participant_ids(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        with self._lock:
            row = self._conversations.get(conversation_id)
            return frozenset(row["participant_ids"]) if row else None

    async def add_participants(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None:
                return False
            for user_id in user_ids:
                if user_id not in row["participant_ids"]:
                    row["participant_ids"].append(user_id)
            row["updated_at"] = _now()
            return True

    async def remove_participants(
        self, conversation_id: str, user_ids: Iterable[str], keep_admin: bool = False
    ) -> bool:
        removed = set(user_ids)
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None:
                return False
            row["participant_ids"] = [p for p in row["participant_ids"] if p not in removed]
            row["admin_ids"] = [a for a in row["admin_ids"] if a not in removed]
            if keep_admin and row["participant_ids"] and not row["admin_ids"]:
                successor = row["participant_ids"][0]
                row["admin_ids"].append(successor)
                logger.info(f"[MEMORY-STORE] Promoted {successor} to admin of {conversation_id}")
            row["updated_at"] = _now()
            return True

    async def add_admins(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None:
                return False
            for user_id in user_ids:
                if user_id in row["participant_ids"] and user_id not in row["admin_ids"]:
                    row["admin_ids"].append(user_id)
            return True

    async def remove_admins(
        self, conversation_id: str, user_ids: Iterable[str], keep_one: bool = False
    ) -> bool:
        removed = set(user_ids)
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None:
                return False
            remaining = [a for a in row["admin_ids"] if a not in removed]
            if keep_one and not remaining:
                return False
            row["admin_ids"] = remaining
            return True

    async def update_conversation_details(
        self,
        conversation_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> Optional[ConversationRecord]:
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None:
                return None
            if name is not None:
                row["name"] = name
            if description is not None:
                row["description"] = description
            if picture is not None:
                row["picture"] = picture
            row["updated_at"] = _now()
            return self._conversation_record(row)

    async def touch_conversation(
        self, conversation_id: str, last_message_id: str, updated_at: datetime
    ) -> None:
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is not None:
                row["last_message_id"] = last_message_id
                row["updated_at"] = updated_at

    # Messages

    def _message_record(self, row: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(**{**row, "read_by": list(row["read_by"])})

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
    ) -> MessageRecord:
        row: Dict[str, Any] = {
            "id": generate_ulid(),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "type": message_type,
            "reply_to_id": reply_to_id,
            "created_at": _now(),
            "read_by": [sender_id],
        }
        with self._lock:
            self._messages[row["id"]] = row
            self._messages_by_conversation.setdefault(conversation_id, []).append(row["id"])
            return self._message_record(row)

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            row = self._messages.get(message_id)
            return self._message_record(row) if row else None

    async def list_messages(
        self, conversation_id: str, limit: int = 50, before: Optional[datetime] = None
    ) -> List[MessageRecord]:
        with self._lock:
            rows = [self._messages[mid] for mid in self._messages_by_conversation.get(conversation_id, [])]
            if before is not None:
                rows = [r for r in rows if r["created_at"] < before]
            return [self._message_record(r) for r in rows[-limit:]] if limit > 0 else []

    async def add_reader(self, conversation_id: str, user_id: str) -> List[str]:
        touched: List[str] = []
        with self._lock:
            for message_id in self._messages_by_conversation.get(conversation_id, []):
                row = self._messages[message_id]
                if row["sender_id"] != user_id and user_id not in row["read_by"]:
                    row["read_by"].append(user_id)
                    touched.append(message_id)
        return touched

    # Notifications

    async def create_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> NotificationRecord:
        row: Dict[str, Any] = {
            "id": generate_ulid(),
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "body": body,
            "data": dict(data or {}),
            "is_read": False,
            "created_at": _now(),
        }
        with self._lock:
            self._notifications[row["id"]] = row
            return NotificationRecord(**row)

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[NotificationRecord]:
        with self._lock:
            rows = [
                r
                for r in self._notifications.values()
                if r["user_id"] == user_id and not (unread_only and r["is_read"])
            ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [NotificationRecord(**r) for r in rows[:limit]]

    async def count_unread_notifications(self, user_id: str) -> int:
        with self._lock:
            return sum(
                1 for r in self._notifications.values() if r["user_id"] == user_id and not r["is_read"]
            )

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        with self._lock:
            row = self._notifications.get(notification_id)
            if row is None or row["user_id"] != user_id:
                return False
            row["is_read"] = True
            return True

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = 0
        with self._lock:
            for row in self._notifications.values():
                if row["user_id"] == user_id and not row["is_read"]:
                    row["is_read"] = True
                    count += 1
        return count

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        with self._lock:
            row = self._notifications.get(notification_id)
            if row is None or row["user_id"] != user_id:
                return False
            del self._notifications[notification_id]
            return True
