# backend/chatline/repositories/notification_repository.py
"""Notification inbox data access. Every query is scoped to its owner."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.notification import Notification
from .base_repository import BaseRepository


class NotificationRepository(BaseRepository[Notification]):
    def __init__(self, db: Session):
        super().__init__(db, Notification)

    def find_for_user(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def count_unread(self, user_id: str) -> int:
        return self.count(user_id=user_id, is_read=False)

    def get_owned(self, notification_id: str, user_id: str) -> Optional[Notification]:
        return self.find_one_by(id=notification_id, user_id=user_id)

    def mark_all_read(self, user_id: str) -> int:
        updated = (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        self.db.flush()
        return int(updated)
