# backend/chatline/repositories/user_repository.py
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def upsert(self, **fields) -> User:
        """Insert the user or overwrite its fields in place."""
        existing = self.get_by_id(fields["id"])
        if existing is None:
            return self.create(**fields)
        for key, value in fields.items():
            setattr(existing, key, value)
        self.db.flush()
        return existing

    def set_presence(self, user_id: str, is_online: bool, last_seen: datetime) -> Optional[User]:
        return self.update(user_id, is_online=is_online, last_seen=last_seen)
