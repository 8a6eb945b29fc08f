# backend/chatline/services/message_service.py
"""
Message delivery engine.

Sends messages, records read receipts and creates conversations. Message
status is never stored: it is derived from the size of ``read_by`` and the
conversation's current participant count every time a message is returned.
"""

from datetime import datetime, timezone
import logging
from typing import Iterable, List, Optional

from ..core.config import settings
from ..core.enums import ConversationType, MessageStatus, MessageType
from ..core.exceptions import (
    ConversationNotFoundException,
    NotParticipantException,
    ValidationException,
)
from ..schemas.records import ConversationRecord, MessageRecord, MessageView, SenderSummary
from ..storage.base import DirectoryStore
from .base import BaseService
from .realtime.membership import ConversationMembershipIndex

logger = logging.getLogger(__name__)


def derive_message_status(read_count: int, participant_count: int) -> MessageStatus:
    """
    Status as a pure function of (|read_by|, participant count).

    seen: everyone has read it; delivered: at least one reader besides the
    sender; sent: only the sender.
    """
    if read_count >= participant_count:
        return MessageStatus.SEEN
    if read_count >= 2:
        return MessageStatus.DELIVERED
    return MessageStatus.SENT


class MessageDeliveryEngine(BaseService):
    """
    Send, mark-read and conversation creation.

    Callers verify membership before ``send_message`` and ``mark_read``; the
    session controller does so for every socket event.
    """

    def __init__(self, store: DirectoryStore, membership: ConversationMembershipIndex):
        super().__init__(store)
        self.membership = membership

    async def _sender_summary(self, user_id: str) -> Optional[SenderSummary]:
        user = await self.store.get_user(user_id)
        if user is None:
            return None
        return SenderSummary(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            profile_picture=user.profile_picture,
        )

    def _view(
        self, message: MessageRecord, participant_count: int, sender: Optional[SenderSummary]
    ) -> MessageView:
        return MessageView(
            **message.model_dump(),
            status=derive_message_status(len(message.read_by), participant_count),
            sender=sender,
        )

    @BaseService.measure_operation("send_message")
    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
    ) -> MessageView:
        """
        Persist a message and point the conversation at it.

        ``reply_to_id`` is stored as given. Storage failures propagate and
        nothing is returned for broadcast.
        """
        message = await self.store.create_message(
            conversation_id, sender_id, content, message_type, reply_to_id
        )
        await self.store.touch_conversation(
            conversation_id, message.id, datetime.now(timezone.utc)
        )
        participant_count = await self.membership.participant_count(conversation_id)
        view = self._view(message, participant_count, await self._sender_summary(sender_id))
        self.logger.debug(
            f"Message {message.id} stored in {conversation_id}",
            extra={"conversation_id": conversation_id, "sender_id": sender_id},
        )
        return view

    @BaseService.measure_operation("mark_read")
    async def mark_read(self, conversation_id: str, user_id: str) -> List[str]:
        """
        Add ``user_id`` to ``read_by`` of every message from others it has not read.

        Returns the ids changed; a repeated call returns [].
        """
        message_ids = await self.store.add_reader(conversation_id, user_id)
        if message_ids:
            self.logger.debug(f"{user_id} read {len(message_ids)} message(s) in {conversation_id}")
        return message_ids

    @BaseService.measure_operation("create_conversation")
    async def create_conversation(
        self,
        conversation_type: ConversationType,
        participant_ids: Iterable[str],
        created_by: str,
        name: Optional[str] = None,
    ) -> ConversationRecord:
        """
        Create a conversation; the creator is always a participant.

        Direct conversations are get-or-create per unordered pair. Groups
        start with the creator as their only admin.
        """
        participants = list(dict.fromkeys([created_by, *participant_ids]))

        if conversation_type == ConversationType.DIRECT:
            if len(participants) != 2:
                raise ValidationException(
                    "A direct conversation needs exactly one other participant",
                    code="INVALID_PARTICIPANTS",
                )
            other = participants[1]
            conversation, created = await self.store.get_or_create_direct_conversation(
                created_by, other, created_by=created_by
            )
            if created:
                self.logger.info(f"Direct conversation {conversation.id} created by {created_by}")
        else:
            conversation = await self.store.create_conversation(
                ConversationType.GROUP,
                participants,
                [created_by],
                created_by=created_by,
                name=name,
            )
            self.logger.info(
                f"Group {conversation.id} created by {created_by} with {len(participants)} member(s)"
            )

        self.membership.invalidate(conversation.id)
        return conversation

    @BaseService.measure_operation("get_conversation_messages")
    async def get_conversation_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[MessageView]:
        """History page for a participant, oldest first."""
        participants = await self.membership.participants_of(conversation_id)
        if user_id not in participants:
            raise NotParticipantException(conversation_id)

        if limit is None:
            limit = settings.conversation_history_limit
        messages = await self.store.list_messages(conversation_id, limit=limit, before=before)
        senders: dict = {}
        views = []
        for message in messages:
            if message.sender_id not in senders:
                senders[message.sender_id] = await self._sender_summary(message.sender_id)
            views.append(self._view(message, len(participants), senders[message.sender_id]))
        return views

    @BaseService.measure_operation("get_user_conversations")
    async def get_user_conversations(self, user_id: str) -> List[ConversationRecord]:
        """
        The user's conversations, most recently active first.

        Direct conversations are named after the other participant.
        """
        conversations = await self.store.list_conversations_for_user(user_id)
        result = []
        for conversation in conversations:
            if conversation.type == ConversationType.DIRECT and not conversation.name:
                other_id = conversation.other_participant_id(user_id)
                other = await self.store.get_user(other_id) if other_id else None
                if other is not None:
                    conversation = conversation.model_copy(update={"name": other.name})
            result.append(conversation)
        return result

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundException(conversation_id)
        return conversation
