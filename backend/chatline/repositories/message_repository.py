# backend/chatline/repositories/message_repository.py
"""
Message Repository.

Messages and their read receipts. ``add_reader_to_conversation`` inserts the
missing (message, user) receipt rows in one statement batch; rows that
already exist are skipped, which makes the operation an idempotent set union.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from ..models.message import Message, MessageRead
from .base_repository import BaseRepository


class MessageRepository(BaseRepository[Message]):
    def __init__(self, db: Session):
        super().__init__(db, Message)

    def create_with_sender_read(self, **fields) -> Message:
        """Insert a message whose only receipt is its sender's."""
        message = self.create(**fields)
        self.db.add(MessageRead(message_id=message.id, user_id=message.sender_id))
        self.db.flush()
        self.db.refresh(message)
        return message

    def find_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[Message]:
        """
        Newest ``limit`` messages older than ``before``, returned oldest first.
        """
        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before is not None:
            query = query.filter(Message.created_at < before)
        rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
        rows.reverse()
        return rows

    def find_unread_ids_for_reader(self, conversation_id: str, user_id: str) -> List[str]:
        """Ids of messages from other senders that lack a receipt for ``user_id``."""
        already_read = select(MessageRead.message_id).where(MessageRead.user_id == user_id)
        rows = (
            self.db.query(Message.id)
            .filter(
                and_(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.id.not_in(already_read),
                )
            )
            .order_by(Message.created_at, Message.id)
            .all()
        )
        return [row[0] for row in rows]

    def add_reader_to_conversation(self, conversation_id: str, user_id: str) -> List[str]:
        """
        Add receipt rows for every unread message. Returns the message ids changed.

        Raises IntegrityError if a concurrent writer inserted one of the rows
        first; the caller retries, and the retry finds nothing left to add.
        """
        message_ids = self.find_unread_ids_for_reader(conversation_id, user_id)
        if not message_ids:
            return []
        now = datetime.now(timezone.utc)
        self.db.add_all(
            [MessageRead(message_id=mid, user_id=user_id, read_at=now) for mid in message_ids]
        )
        self.db.flush()
        return message_ids
