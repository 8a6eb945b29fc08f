# backend/chatline/services/notification_service.py
"""
Notification fan-out and inbox.

After a message is stored, every participant except the sender gets a
persisted notification, pushed straight to each of their live connections
(not through the conversation room). One recipient failing is logged,
counted, and does not stop the others.
"""

from dataclasses import dataclass, field
import logging
from typing import Iterable, List, Optional

from ..core.config import settings
from ..core.enums import MessageType, NotificationType
from ..core.exceptions import NotFoundException
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..schemas.records import ConversationRecord, MessageRecord, NotificationRecord
from ..storage.base import DirectoryStore
from .base import BaseService
from .realtime.events import OutboundEvent
from .realtime.presence import PresenceRegistry
from .realtime.rooms import RoomRouter

logger = logging.getLogger(__name__)

GROUP_TITLE_FALLBACK = "Group"

MEDIA_SUMMARIES = {
    MessageType.IMAGE: "📷 Photo",
    MessageType.VIDEO: "🎬 Video",
    MessageType.FILE: "📎 File",
    MessageType.VOICE: "🎤 Voice message",
}


def build_notification_title(conversation: ConversationRecord, sender_name: str) -> str:
    if conversation.is_group:
        return conversation.name or GROUP_TITLE_FALLBACK
    return sender_name


def build_notification_body(
    message_type: MessageType,
    content: str,
    sender_name: str,
    is_group: bool,
    preview_length: int = 50,
) -> str:
    """Media kinds get a fixed summary; long text is cut to ``preview_length`` plus "..."."""
    body = MEDIA_SUMMARIES.get(message_type)
    if body is None:
        body = content if len(content) <= preview_length else content[:preview_length] + "..."
    if is_group:
        body = f"{sender_name}: {body}"
    return body


@dataclass
class FanoutReport:
    notified: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pushed_connections: int = 0


class NotificationService(BaseService):
    def __init__(
        self,
        store: DirectoryStore,
        presence: Optional[PresenceRegistry] = None,
        router: Optional[RoomRouter] = None,
    ):
        super().__init__(store)
        self.presence = presence
        self.router = router

    # Fan-out

    @BaseService.measure_operation("fan_out_message")
    async def fan_out_message(
        self,
        conversation: ConversationRecord,
        participant_ids: Iterable[str],
        message: MessageRecord,
        sender_name: str,
    ) -> FanoutReport:
        """Notify every participant except the sender."""
        report = FanoutReport()
        title = build_notification_title(conversation, sender_name)
        body = build_notification_body(
            message.type,
            message.content,
            sender_name,
            conversation.is_group,
            settings.notification_preview_length,
        )
        data = {
            "conversation_id": conversation.id,
            "message_id": message.id,
            "sender_id": message.sender_id,
            "sender_name": sender_name,
        }

        for recipient_id in sorted(set(participant_ids)):
            if recipient_id == message.sender_id:
                continue
            try:
                notification = await self.store.create_notification(
                    recipient_id, NotificationType.MESSAGE, title, body, data
                )
                report.pushed_connections += self._push(recipient_id, notification)
                report.notified.append(recipient_id)
            except Exception as exc:
                report.failed.append(recipient_id)
                logger.error(
                    f"[FANOUT] Notification for {recipient_id} failed: {exc}",
                    exc_info=True,
                    extra={"conversation_id": conversation.id, "message_id": message.id},
                )

        prometheus_metrics.record_fanout("notification", "ok", len(report.notified))
        prometheus_metrics.record_fanout("notification", "failed", len(report.failed))
        return report

    def _push(self, user_id: str, notification: NotificationRecord) -> int:
        if self.presence is None or self.router is None:
            return 0
        connection_ids = self.presence.connections_of(user_id)
        if not connection_ids:
            return 0
        return self.router.send_to_connections(
            connection_ids, OutboundEvent.NOTIFICATION_NEW.value, notification.to_wire()
        )

    # Inbox

    @BaseService.measure_operation("list_notifications")
    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[NotificationRecord]:
        return await self.store.list_notifications(user_id, limit=limit, unread_only=unread_only)

    async def unread_count(self, user_id: str) -> int:
        return await self.store.count_unread_notifications(user_id)

    @BaseService.measure_operation("mark_notification_read")
    async def mark_as_read(self, notification_id: str, user_id: str) -> None:
        """Raises NotFoundException for missing ids and for other users' notifications."""
        if not await self.store.mark_notification_read(notification_id, user_id):
            raise NotFoundException("Notification not found", code="NOTIFICATION_NOT_FOUND")

    @BaseService.measure_operation("mark_all_notifications_read")
    async def mark_all_as_read(self, user_id: str) -> int:
        return await self.store.mark_all_notifications_read(user_id)

    @BaseService.measure_operation("delete_notification")
    async def delete_notification(self, notification_id: str, user_id: str) -> None:
        if not await self.store.delete_notification(notification_id, user_id):
            raise NotFoundException("Notification not found", code="NOTIFICATION_NOT_FOUND")
