from .records import (
    ConversationRecord,
    GroupView,
    MessageRecord,
    MessageView,
    NotificationRecord,
    SenderSummary,
    UserRecord,
)
from .socket_events import (
    ConversationCreatePayload,
    ConversationRefPayload,
    MessageSendPayload,
    UserStatusRequestPayload,
)

__all__ = [
    "ConversationRecord",
    "GroupView",
    "MessageRecord",
    "MessageView",
    "NotificationRecord",
    "SenderSummary",
    "UserRecord",
    "ConversationCreatePayload",
    "ConversationRefPayload",
    "MessageSendPayload",
    "UserStatusRequestPayload",
]
