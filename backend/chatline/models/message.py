# backend/chatline/models/message.py
"""
Message model for the chat system.

Read receipts are rows in ``message_reads`` keyed by (message_id, user_id);
the composite primary key makes "add reader" an idempotent set union.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    conversation_id = Column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(10), nullable=False, default="text")
    reply_to_id = Column(String(26), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    reads = relationship(
        "MessageRead",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (Index("idx_messages_conversation_created", "conversation_id", "created_at"),)


class MessageRead(Base):
    """One row per user who has read (or sent) a message."""

    __tablename__ = "message_reads"

    message_id = Column(String(26), ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True)
    read_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    message = relationship("Message", back_populates="reads")
