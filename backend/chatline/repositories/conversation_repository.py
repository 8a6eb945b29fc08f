# backend/chatline/repositories/conversation_repository.py
"""
Conversation Repository.

Data access for conversations and their participant rows. Membership
changes are single-row inserts and deletes so concurrent edits to one
conversation never overwrite each other.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models.conversation import Conversation, ConversationParticipant
from .base_repository import BaseRepository


class ConversationRepository(BaseRepository[Conversation]):
    """
    Repository for Conversation entity operations.

    Handles:
    - Finding a direct conversation by its user pair key
    - Listing conversations for a user
    - Participant and admin row maintenance
    """

    def __init__(self, db: Session):
        super().__init__(db, Conversation)

    def find_by_direct_key(self, direct_key: str) -> Optional[Conversation]:
        return self.find_one_by(direct_key=direct_key)

    def create_with_participants(
        self,
        participant_ids: Iterable[str],
        admin_ids: Iterable[str],
        **fields,
    ) -> Conversation:
        """
        Insert a conversation and one participant row per distinct user.

        Raises IntegrityError when ``direct_key`` is already taken.
        """
        admins = set(admin_ids)
        conversation = self.create(**fields)
        for user_id in dict.fromkeys(participant_ids):
            self.db.add(
                ConversationParticipant(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    is_admin=user_id in admins,
                )
            )
        self.db.flush()
        self.db.refresh(conversation)
        return conversation

    def find_for_user(self, user_id: str) -> List[Conversation]:
        """Conversations where the user is a participant, most recently updated first."""
        return (
            self.db.query(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .filter(ConversationParticipant.user_id == user_id)
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .all()
        )

    def get_participant_rows(self, conversation_id: str) -> List[ConversationParticipant]:
        return (
            self.db.query(ConversationParticipant)
            .filter(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.joined_at, ConversationParticipant.user_id)
            .all()
        )

    def add_participant(self, conversation_id: str, user_id: str) -> bool:
        """Insert a participant row unless one exists. True if inserted."""
        existing = self.db.get(ConversationParticipant, (conversation_id, user_id))
        if existing is not None:
            return False
        self.db.add(ConversationParticipant(conversation_id=conversation_id, user_id=user_id))
        self.db.flush()
        return True

    def remove_participants(self, conversation_id: str, user_ids: Iterable[str]) -> int:
        ids = list(user_ids)
        if not ids:
            return 0
        deleted = (
            self.db.query(ConversationParticipant)
            .filter(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id.in_(ids),
            )
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return int(deleted)

    def set_admin_flag(self, conversation_id: str, user_ids: Iterable[str], is_admin: bool) -> int:
        ids = list(user_ids)
        if not ids:
            return 0
        updated = (
            self.db.query(ConversationParticipant)
            .filter(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id.in_(ids),
            )
            .update({ConversationParticipant.is_admin: is_admin}, synchronize_session=False)
        )
        self.db.flush()
        return int(updated)

    def get_for_update(self, conversation_id: str) -> Optional[Conversation]:
        """Load the conversation row locked until the transaction ends."""
        return (
            self.db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .with_for_update()
            .first()
        )

    def admin_ids(self, conversation_id: str) -> List[str]:
        rows = (
            self.db.query(ConversationParticipant.user_id)
            .filter(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.is_admin.is_(True),
            )
            .all()
        )
        return [row.user_id for row in rows]

    def ensure_admin(self, conversation_id: str) -> Optional[str]:
        """Promote the earliest-joined participant when none is an admin. Returns who was promoted."""
        rows = self.get_participant_rows(conversation_id)
        if not rows or any(row.is_admin for row in rows):
            return None
        successor = rows[0]
        successor.is_admin = True
        self.db.flush()
        return successor.user_id

    def touch(self, conversation_id: str, updated_at: datetime, **fields) -> Optional[Conversation]:
        return self.update(conversation_id, updated_at=updated_at, **fields)
