# backend/chatline/models/conversation.py
"""
Conversation models.

A conversation is either a direct chat between exactly two users or a named
group. Membership lives in ``conversation_participants`` (one row per user,
with an admin flag) so adding or removing members is a row insert/delete and
never a read-modify-write of a shared list.

Direct conversations carry ``direct_key`` (the sorted user pair). The unique
constraint on it is what guarantees at most one direct conversation per pair,
even when two requests race.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class Conversation(Base):
    """
    Attributes:
        id: ULID primary key
        type: "direct" or "group"
        direct_key: "<low>:<high>" user pair for direct conversations, NULL for groups
        name/description/picture: group metadata
        last_message_id: newest message, if any
    """

    __tablename__ = "conversations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    type = Column(String(10), nullable=False)
    direct_key = Column(String(140), nullable=True, unique=True)
    name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    picture = Column(String(500), nullable=True)
    created_by = Column(String(64), nullable=True)
    last_message_id = Column(String(26), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        order_by="ConversationParticipant.joined_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (Index("idx_conversations_updated_at", "updated_at"),)

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, type={self.type})>"


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    conversation_id = Column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String(64), primary_key=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    joined_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    conversation = relationship("Conversation", back_populates="participants")

    __table_args__ = (Index("idx_conversation_participants_user", "user_id"),)
