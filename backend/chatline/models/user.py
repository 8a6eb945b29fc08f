# backend/chatline/models/user.py
"""
User model.

Users are provisioned from verified token claims on connect; the chat core
only needs display fields and the persisted presence snapshot.
"""

from sqlalchemy import Boolean, Column, DateTime, String

from ..database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(100), nullable=False)
    display_name = Column(String(100), nullable=False)
    profile_picture = Column(String(500), nullable=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"
