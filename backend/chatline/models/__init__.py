from .conversation import Conversation, ConversationParticipant
from .message import Message, MessageRead
from .notification import Notification
from .user import User

__all__ = [
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageRead",
    "Notification",
    "User",
]
