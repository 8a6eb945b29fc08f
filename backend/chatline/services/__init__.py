from .base import BaseService
from .group_service import GroupService
from .message_service import MessageDeliveryEngine, derive_message_status
from .notification_service import NotificationService

__all__ = [
    "BaseService",
    "GroupService",
    "MessageDeliveryEngine",
    "NotificationService",
    "derive_message_status",
]
