# backend/chatline/storage/sql.py
"""
SQLAlchemy-backed directory store.

Repositories are synchronous (one Session per operation); every call runs in
a worker thread via ``asyncio.to_thread`` so the event loop never blocks on
the database. Each operation is its own unit of work: commit on success,
rollback on failure, and SQLAlchemy errors become ``RepositoryException``.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.enums import ConversationType, MessageType, NotificationType
from ..core.exceptions import RepositoryException
from ..database import build_session_factory, create_all, with_db_retry
from ..models.conversation import Conversation
from ..models.message import Message
from ..models.notification import Notification
from ..models.user import User
from ..repositories import (
    ConversationRepository,
    MessageRepository,
    NotificationRepository,
    UserRepository,
)
from ..schemas.records import ConversationRecord, MessageRecord, NotificationRecord, UserRecord
from .base import DirectoryStore, direct_pair_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ADD_READER_ATTEMPTS = 3


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _user_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        profile_picture=user.profile_picture,
        is_online=bool(user.is_online),
        last_seen=_aware(user.last_seen),
    )


def _conversation_record(conversation: Conversation) -> ConversationRecord:
    participants = list(conversation.participants)
    return ConversationRecord(
        id=conversation.id,
        type=ConversationType(conversation.type),
        participant_ids=[p.user_id for p in participants],
        admin_ids=[p.user_id for p in participants if p.is_admin],
        name=conversation.name,
        description=conversation.description,
        picture=conversation.picture,
        created_by=conversation.created_by,
        last_message_id=conversation.last_message_id,
        created_at=_aware(conversation.created_at),
        updated_at=_aware(conversation.updated_at),
    )


def _message_record(message: Message) -> MessageRecord:
    reads = sorted(message.reads, key=lambda r: (r.user_id != message.sender_id, _aware(r.read_at)))
    return MessageRecord(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        type=MessageType(message.type),
        reply_to_id=message.reply_to_id,
        created_at=_aware(message.created_at),
        read_by=[r.user_id for r in reads],
    )


def _notification_record(notification: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=notification.id,
        user_id=notification.user_id,
        type=NotificationType(notification.type),
        title=notification.title,
        body=notification.body,
        data=dict(notification.data or {}),
        is_read=bool(notification.is_read),
        created_at=_aware(notification.created_at),
    )


class SqlDirectoryStore(DirectoryStore):
    def __init__(self, engine: Engine, session_factory: Optional[sessionmaker] = None):
        self.engine = engine
        self.session_factory = session_factory or build_session_factory(engine)

    def create_schema(self) -> None:
        create_all(self.engine)

    # Unit of work

    def _in_session(self, op_name: str, func: Callable[[Session], T]) -> T:
        session: Session = self.session_factory()
        try:
            result = func(session)
            session.commit()
            return result
        except (IntegrityError, OperationalError, RepositoryException):
            # Left for with_db_retry and the conflict handlers to classify.
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"[SQL-STORE] {op_name} failed: {exc}")
            raise RepositoryException(f"{op_name} failed: {exc}") from exc
        finally:
            session.close()

    def _retrying(self, op_name: str, func: Callable[[Session], T]) -> T:
        """One unit of work with transient-error retries. IntegrityError passes through."""
        try:
            return with_db_retry(op_name, lambda: self._in_session(op_name, func))
        except OperationalError as exc:
            logger.error(f"[SQL-STORE] {op_name} failed: {exc}")
            raise RepositoryException(f"{op_name} failed: {exc}") from exc

    def _execute(self, op_name: str, func: Callable[[Session], T]) -> T:
        try:
            return self._retrying(op_name, func)
        except IntegrityError as exc:
            logger.error(f"[SQL-STORE] {op_name} violated a constraint: {exc}")
            raise RepositoryException(f"{op_name} violated a constraint: {exc}") from exc

    async def _run(self, op_name: str, func: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._execute, op_name, func)

    # Users

    async def save_user(self, user: UserRecord) -> UserRecord:
        def op(session: Session) -> UserRecord:
            row = UserRepository(session).upsert(**user.model_dump())
            return _user_record(row)

        return await self._run("save_user", op)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        def op(session: Session) -> Optional[UserRecord]:
            row = UserRepository(session).get_by_id(user_id)
            return _user_record(row) if row else None

        return await self._run("get_user", op)

    async def set_user_presence(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        def op(session: Session) -> None:
            if UserRepository(session).set_presence(user_id, is_online, last_seen) is None:
                logger.debug(f"[SQL-STORE] Presence update for unknown user {user_id}")

        await self._run("set_user_presence", op)

    # Conversations

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
        participants = list(participant_ids)
        admins = [a for a in admin_ids if a in participants]

        def op(session: Session) -> ConversationRecord:
            row = ConversationRepository(session).create_with_participants(
                participants,
                admins,
                type=conversation_type.value,
                created_by=created_by,
                name=name,
                description=description,
                picture=picture,
            )
            return _conversation_record(row)

        return await self._run("create_conversation", op)

    def _get_or_create_direct(
        self, user_a: str, user_b: str, created_by: Optional[str]
    ) -> Tuple[ConversationRecord, bool]:
        key = direct_pair_key(user_a, user_b)

        def find(session: Session) -> Optional[ConversationRecord]:
            row = ConversationRepository(session).find_by_direct_key(key)
            return _conversation_record(row) if row else None

        def find_or_create(session: Session) -> Tuple[ConversationRecord, bool]:
            repo = ConversationRepository(session)
            existing = repo.find_by_direct_key(key)
            if existing is not None:
                return _conversation_record(existing), False
            row = repo.create_with_participants(
                [user_a, user_b],
                [created_by] if created_by else [],
                type=ConversationType.DIRECT.value,
                direct_key=key,
                created_by=created_by,
            )
            return _conversation_record(row), True

        try:
            return self._retrying("get_or_create_direct_conversation", find_or_create)
        except IntegrityError:
            # Another writer inserted the pair between our lookup and insert.
            logger.info(f"[SQL-STORE] Direct conversation race for {key}; using the winner")
            winner = self._execute("get_direct_conversation", find)
            if winner is None:
                raise RepositoryException(f"Direct conversation {key} vanished after conflict")
            return winner, False

    async def get_or_create_direct_conversation(
        self, user_a: str, user_b: str, created_by: Optional[str] = None
    ) -> Tuple[ConversationRecord, bool]:
        return await asyncio.to_thread(self._get_or_create_direct, user_a, user_b, created_by)

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        def op(session: Session) -> Optional[ConversationRecord]:
            row = ConversationRepository(session).get_by_id(conversation_id)
            return _conversation_record(row) if row else None

        return await self._run("get_conversation", op)

    async def list_conversations_for_user(self, user_id: str) -> List[ConversationRecord]:
        def op(session: Session) -> List[ConversationRecord]:
            rows = ConversationRepository(session).find_for_user(user_id)
            return [_conversation_record(r) for r in rows]

        return await self._run("list_conversations_for_user", op)

    async def get_participant_ids(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        def op(session: Session) -> Optional[FrozenSet[str]]:
            repo = ConversationRepository(session)
            if repo.get_by_id(conversation_id) is None:
                return None
            return frozenset(p.user_id for p in repo.get_participant_rows(conversation_id))

        return await self._run("get_participant_ids", op)

    async def add_participants(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        ids = list(user_ids)

        def op(session: Session) -> bool:
            repo = ConversationRepository(session)
            if repo.get_by_id(conversation_id) is None:
                return False
            for user_id in dict.fromkeys(ids):
                repo.add_participant(conversation_id, user_id)
            repo.touch(conversation_id, datetime.now(timezone.utc))
            return True

        try:
            return await self._run("add_participants", op)
        except RepositoryException:
            # A concurrent add of the same member; the rows now exist.
            logger.info(f"[SQL-STORE] Concurrent participant add on {conversation_id}, retrying")
            return await self._run("add_participants", op)

    async def remove_participants(
        self, conversation_id: str, user_ids: Iterable[str], keep_admin: bool = False
    ) -> bool:
        ids = list(user_ids)

        def op(session: Session) -> bool:
            repo = ConversationRepository(session)
            if repo.get_for_update(conversation_id) is None:
                return False
            repo.remove_participants(conversation_id, ids)
            if keep_admin:
                successor = repo.ensure_admin(conversation_id)
                if successor is not None:
                    logger.info(f"[SQL-STORE] Promoted {successor} to admin of {conversation_id}")
            repo.touch(conversation_id, datetime.now(timezone.utc))
            return True

        return await self._run("remove_participants", op)

    async def add_admins(self, conversation_id: str, user_ids: Iterable[str]) -> bool:
        ids = list(user_ids)

        def op(session: Session) -> bool:
            repo = ConversationRepository(session)
            if repo.get_by_id(conversation_id) is None:
                return False
            repo.set_admin_flag(conversation_id, ids, True)
            return True

        return await self._run("add_admins", op)

    async def remove_admins(
        self, conversation_id: str, user_ids: Iterable[str], keep_one: bool = False
    ) -> bool:
        ids = list(user_ids)

        def op(session: Session) -> bool:
            repo = ConversationRepository(session)
            if repo.get_for_update(conversation_id) is None:
                return False
            if keep_one and not set(repo.admin_ids(conversation_id)) - set(ids):
                return False
            repo.set_admin_flag(conversation_id, ids, False)
            return True

        return await self._run("remove_admins", op)

    async def update_conversation_details(
        self,
        conversation_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> Optional[ConversationRecord]:
        changes = {
            key: value
            for key, value in (("name", name), ("description", description), ("picture", picture))
            if value is not None
        }

        def op(session: Session) -> Optional[ConversationRecord]:
            repo = ConversationRepository(session)
            row = repo.touch(conversation_id, datetime.now(timezone.utc), **changes)
            if row is None:
                return None
            session.refresh(row)
            return _conversation_record(row)

        return await self._run("update_conversation_details", op)

    async def touch_conversation(
        self, conversation_id: str, last_message_id: str, updated_at: datetime
    ) -> None:
        def op(session: Session) -> None:
            ConversationRepository(session).touch(
                conversation_id, updated_at, last_message_id=last_message_id
            )

        await self._run("touch_conversation", op)

    # Messages

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
    ) -> MessageRecord:
        def op(session: Session) -> MessageRecord:
            row = MessageRepository(session).create_with_sender_read(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                type=message_type.value,
                reply_to_id=reply_to_id,
            )
            return _message_record(row)

        return await self._run("create_message", op)

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        def op(session: Session) -> Optional[MessageRecord]:
            row = MessageRepository(session).get_by_id(message_id)
            return _message_record(row) if row else None

        return await self._run("get_message", op)

    async def list_messages(
        self, conversation_id: str, limit: int = 50, before: Optional[datetime] = None
    ) -> List[MessageRecord]:
        if limit <= 0:
            return []

        def op(session: Session) -> List[MessageRecord]:
            rows = MessageRepository(session).find_by_conversation(conversation_id, limit, before)
            return [_message_record(r) for r in rows]

        return await self._run("list_messages", op)

    def _add_reader(self, conversation_id: str, user_id: str) -> List[str]:
        def op(session: Session) -> List[str]:
            return MessageRepository(session).add_reader_to_conversation(conversation_id, user_id)

        for attempt in range(1, _ADD_READER_ATTEMPTS + 1):
            try:
                return self._retrying("add_reader", op)
            except IntegrityError as exc:
                if attempt == _ADD_READER_ATTEMPTS:
                    raise RepositoryException(f"add_reader kept conflicting: {exc}") from exc
                logger.info(
                    f"[SQL-STORE] Concurrent read receipts for {user_id} in {conversation_id}, "
                    f"retrying ({attempt}/{_ADD_READER_ATTEMPTS})"
                )
        return []

    async def add_reader(self, conversation_id: str, user_id: str) -> List[str]:
        return await asyncio.to_thread(self._add_reader, conversation_id, user_id)

    # Notifications

    async def create_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> NotificationRecord:
        def op(session: Session) -> NotificationRecord:
            row = NotificationRepository(session).create(
                user_id=user_id,
                type=notification_type.value,
                title=title,
                body=body,
                data=dict(data or {}),
                is_read=False,
            )
            return _notification_record(row)

        return await self._run("create_notification", op)

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[NotificationRecord]:
        def op(session: Session) -> List[NotificationRecord]:
            rows = NotificationRepository(session).find_for_user(user_id, limit, unread_only)
            return [_notification_record(r) for r in rows]

        return await self._run("list_notifications", op)

    async def count_unread_notifications(self, user_id: str) -> int:
        return await self._run(
            "count_unread_notifications",
            lambda session: NotificationRepository(session).count_unread(user_id),
        )

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        def op(session: Session) -> bool:
            row = NotificationRepository(session).get_owned(notification_id, user_id)
            if row is None:
                return False
            row.is_read = True
            session.flush()
            return True

        return await self._run("mark_notification_read", op)

    async def mark_all_notifications_read(self, user_id: str) -> int:
        return await self._run(
            "mark_all_notifications_read",
            lambda session: NotificationRepository(session).mark_all_read(user_id),
        )

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        def op(session: Session) -> bool:
            repo = NotificationRepository(session)
            if repo.get_owned(notification_id, user_id) is None:
                return False
            return repo.delete(notification_id)

        return await self._run("delete_notification", op)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
