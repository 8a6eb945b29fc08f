# backend/chatline/services/realtime/session.py
"""
Session lifecycle controller.

One ChatSession per socket:

    CONNECTING -> AUTHENTICATED -> ACTIVE -> DISCONNECTED

Inbound events are handled one at a time in arrival order (the transport
loop awaits ``handle_frame`` before reading the next frame). Every handler
failure stops at ``dispatch``: domain errors are reported with their own
short message, anything else with a generic one, and the session stays up.
"""

from datetime import datetime, timezone
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from ...auth import Identity
from ...core.enums import ConversationType, SessionState
from ...core.exceptions import DomainException, NotParticipantException
from ...monitoring.prometheus_metrics import prometheus_metrics
from ...schemas.records import UserRecord
from ...schemas.socket_events import (
    ConversationCreatePayload,
    ConversationRefPayload,
    MessageSendPayload,
    UserStatusRequestPayload,
)
from .events import (
    InboundEvent,
    OutboundEvent,
    build_error,
    build_messages_seen,
    build_online_list,
    build_status_response,
    build_typing_update,
    build_user_status,
    conversation_room,
    decode_frame,
)
from .rooms import Connection, FrameSink
from .sync import join_users_to_room

if TYPE_CHECKING:
    from .hub import RealtimeHub

logger = logging.getLogger(__name__)

GENERIC_ERRORS = {
    InboundEvent.MESSAGE_SEND.value: "Failed to send message",
    InboundEvent.MESSAGES_READ.value: "Failed to mark messages as read",
    InboundEvent.CONVERSATION_CREATE.value: "Failed to create conversation",
    InboundEvent.CONVERSATION_JOIN.value: "Failed to join conversation",
    InboundEvent.USER_STATUS_REQUEST.value: "Failed to load user status",
}
DEFAULT_ERROR = "Request failed"


class ChatSession:
    def __init__(self, hub: "RealtimeHub", sink: FrameSink):
        self.hub = hub
        self.sink = sink
        self.state = SessionState.CONNECTING
        self.identity: Optional[Identity] = None
        self.connection: Optional[Connection] = None
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            InboundEvent.MESSAGE_SEND.value: self._on_message_send,
            InboundEvent.TYPING_START.value: self._on_typing_start,
            InboundEvent.TYPING_STOP.value: self._on_typing_stop,
            InboundEvent.MESSAGES_READ.value: self._on_messages_read,
            InboundEvent.CONVERSATION_CREATE.value: self._on_conversation_create,
            InboundEvent.CONVERSATION_JOIN.value: self._on_conversation_join,
            InboundEvent.CONVERSATION_LEAVE.value: self._on_conversation_leave,
            InboundEvent.USERS_ONLINE_REQUEST.value: self._on_users_online_request,
            InboundEvent.USER_STATUS_REQUEST.value: self._on_user_status_request,
        }

    @property
    def user_id(self) -> str:
        if self.identity is None:
            raise RuntimeError("session is not authenticated")
        return self.identity.user_id

    # Lifecycle

    def authenticate(self, token: Optional[str]) -> bool:
        """CONNECTING -> AUTHENTICATED, or straight to DISCONNECTED on a bad token."""
        if self.state != SessionState.CONNECTING:
            raise RuntimeError(f"cannot authenticate from state {self.state.value}")
        identity = self.hub.verifier.validate(token)
        if identity is None:
            self.state = SessionState.DISCONNECTED
            return False
        self.identity = identity
        self.state = SessionState.AUTHENTICATED
        return True

    async def activate(self) -> None:
        """
        AUTHENTICATED -> ACTIVE.

        Registers presence (announcing the user if this is their first
        connection) and joins one room per conversation the user belongs to.
        """
        if self.state != SessionState.AUTHENTICATED:
            raise RuntimeError(f"cannot activate from state {self.state.value}")
        user_id = self.user_id

        connection = Connection(user_id, self.sink, queue_size=self.hub.config.ws_outbound_queue_size)
        self.connection = connection
        self.hub.router.add_connection(connection)
        connection.start()
        first = self.hub.presence.register(user_id, connection.id)
        self.hub.track(self)
        logger.info(
            f"[SESSION] {user_id} connected",
            extra={"user_id": user_id, "connection_id": connection.id, "first_connection": first},
        )

        await self._ensure_user_record()
        if first:
            await self._announce_presence(user_id)

        conversations = await self.hub.store.list_conversations_for_user(user_id)
        for conversation in conversations:
            self.hub.router.join(connection.id, conversation_room(conversation.id))

        self.state = SessionState.ACTIVE

    async def disconnect(self) -> None:
        """Any state -> DISCONNECTED. Announces the user offline if this was their last connection."""
        if self.state == SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        connection = self.connection
        if connection is None or self.identity is None:
            return
        user_id = self.identity.user_id

        self.hub.router.remove_connection(connection.id)
        last = self.hub.presence.unregister(user_id, connection.id)
        self.hub.untrack(self)
        logger.info(
            f"[SESSION] {user_id} disconnected",
            extra={"user_id": user_id, "connection_id": connection.id, "last_connection": last},
        )

        if last:
            await self._announce_presence(user_id)
        await connection.close()

    async def _ensure_user_record(self) -> None:
        user_id = self.user_id
        identity = self.identity
        try:
            if await self.hub.store.get_user(user_id) is None:
                await self.hub.store.save_user(
                    UserRecord(
                        id=user_id,
                        username=identity.username,
                        display_name=identity.display_name,
                    )
                )
        except Exception as exc:
            logger.warning(f"[SESSION] Could not provision user {user_id}: {exc}")

    async def _announce_presence(self, user_id: str) -> None:
        """
        Persist and broadcast the user's current registry state.

        Transitions for one user run one at a time and re-read the registry
        under the hub's per-user lock, so a stale offline never lands after a
        newer online (or the reverse). Nothing is sent when the state matches
        the last announcement.
        """
        async with self.hub.presence_transition(user_id):
            online = self.hub.presence.is_online(user_id)
            if online == (user_id in self.hub.announced_online):
                return
            now = datetime.now(timezone.utc)
            await self._persist_presence(online, now)
            if online:
                self.hub.announced_online.add(user_id)
            else:
                self.hub.announced_online.discard(user_id)
            self.hub.router.broadcast_all(
                OutboundEvent.USER_STATUS.value, build_user_status(user_id, online, now)
            )

    async def _persist_presence(self, is_online: bool, when: datetime) -> None:
        try:
            await self.hub.store.set_user_presence(self.user_id, is_online, when)
        except Exception as exc:
            logger.error(
                f"[SESSION] Failed to persist presence for {self.user_id}: {exc}",
                exc_info=True,
            )

    # Inbound

    async def handle_frame(self, raw: str) -> None:
        try:
            event, data = decode_frame(raw)
        except ValueError as exc:
            logger.info(f"[SESSION] Malformed frame from {self.user_id}: {exc}")
            self._reply(OutboundEvent.ERROR.value, build_error("Malformed event frame"))
            return
        await self.dispatch(event, data)

    async def dispatch(self, event: str, data: Any) -> None:
        if self.state != SessionState.ACTIVE:
            logger.debug(f"[SESSION] Ignoring {event} in state {self.state.value}")
            return
        handler = self._handlers.get(event)
        if handler is None:
            prometheus_metrics.record_socket_event("unknown", "rejected")
            self._reply(OutboundEvent.ERROR.value, build_error(f"Unknown event: {event}"))
            return

        try:
            await handler(data if data is not None else {})
            prometheus_metrics.record_socket_event(event, "ok")
        except ValidationError as exc:
            prometheus_metrics.record_socket_event(event, "invalid")
            logger.info(f"[SESSION] Invalid {event} payload from {self.user_id}: {exc.errors()}")
            self._reply(OutboundEvent.ERROR.value, build_error(f"Invalid payload for {event}"))
        except DomainException as exc:
            prometheus_metrics.record_socket_event(event, "declined")
            logger.info(
                f"[SESSION] {event} declined for {self.user_id}: {exc.message}",
                extra={"code": exc.code, "details": exc.details},
            )
            self._reply(OutboundEvent.ERROR.value, build_error(exc.message))
        except Exception as exc:
            prometheus_metrics.record_socket_event(event, "error")
            logger.error(f"[SESSION] {event} failed for {self.user_id}: {exc}", exc_info=True)
            self._reply(OutboundEvent.ERROR.value, build_error(GENERIC_ERRORS.get(event, DEFAULT_ERROR)))

    def _reply(self, event: str, payload: Any) -> None:
        if self.connection is not None:
            self.hub.router.send_to_connections([self.connection.id], event, payload)

    async def _require_participant(self, conversation_id: str) -> frozenset:
        participants = await self.hub.membership.participants_of(conversation_id)
        if self.user_id not in participants:
            raise NotParticipantException(conversation_id)
        return participants

    # Handlers

    async def _on_message_send(self, data: Any) -> None:
        payload = MessageSendPayload.model_validate(data)
        participants = await self._require_participant(payload.conversation_id)
        message = await self.hub.messages.send_message(
            payload.conversation_id,
            self.user_id,
            payload.content,
            payload.type,
            payload.reply_to_id,
        )
        self.hub.router.broadcast(
            conversation_room(payload.conversation_id),
            OutboundEvent.MESSAGE_NEW.value,
            message.to_wire(),
        )

        # The message is committed and broadcast; fan-out problems are logged only.
        sender_name = message.sender.display_name if message.sender else self.identity.display_name
        try:
            conversation = await self.hub.messages.get_conversation(payload.conversation_id)
            await self.hub.notifications.fan_out_message(conversation, participants, message, sender_name)
        except Exception as exc:
            logger.error(
                f"[FANOUT] Fan-out for message {message.id} failed: {exc}",
                exc_info=True,
                extra={"conversation_id": payload.conversation_id},
            )

    async def _typing(self, data: Any, is_typing: bool) -> None:
        payload = ConversationRefPayload.model_validate(data)
        await self._require_participant(payload.conversation_id)
        self.hub.router.broadcast(
            conversation_room(payload.conversation_id),
            OutboundEvent.TYPING_UPDATE.value,
            build_typing_update(payload.conversation_id, self.user_id, is_typing),
            exclude_connection_id=self.connection.id,
        )

    async def _on_typing_start(self, data: Any) -> None:
        await self._typing(data, True)

    async def _on_typing_stop(self, data: Any) -> None:
        await self._typing(data, False)

    async def _on_messages_read(self, data: Any) -> None:
        payload = ConversationRefPayload.model_validate(data)
        await self._require_participant(payload.conversation_id)
        message_ids = await self.hub.messages.mark_read(payload.conversation_id, self.user_id)
        if message_ids:
            self.hub.router.broadcast(
                conversation_room(payload.conversation_id),
                OutboundEvent.MESSAGES_SEEN.value,
                build_messages_seen(payload.conversation_id, self.user_id, message_ids),
                exclude_connection_id=self.connection.id,
            )

    async def _on_conversation_create(self, data: Any) -> None:
        payload = ConversationCreatePayload.model_validate(data)
        conversation = await self.hub.messages.create_conversation(
            ConversationType(payload.type),
            payload.participant_ids,
            self.user_id,
            payload.name,
        )
        joined = join_users_to_room(
            self.hub.presence,
            self.hub.router,
            conversation.participant_ids,
            conversation_room(conversation.id),
        )
        self.hub.router.send_to_connections(
            joined, OutboundEvent.CONVERSATION_NEW.value, conversation.to_wire()
        )

    async def _on_conversation_join(self, data: Any) -> None:
        payload = ConversationRefPayload.model_validate(data)
        await self._require_participant(payload.conversation_id)
        self.hub.router.join(self.connection.id, conversation_room(payload.conversation_id))

    async def _on_conversation_leave(self, data: Any) -> None:
        payload = ConversationRefPayload.model_validate(data)
        self.hub.router.leave(self.connection.id, conversation_room(payload.conversation_id))

    async def _on_users_online_request(self, data: Any) -> None:
        self._reply(
            OutboundEvent.USERS_ONLINE_LIST.value,
            build_online_list(self.hub.presence.online_users()),
        )

    async def _on_user_status_request(self, data: Any) -> None:
        payload = UserStatusRequestPayload.model_validate(data)
        user = await self.hub.store.get_user(payload.user_id)
        self._reply(
            OutboundEvent.USER_STATUS_RESPONSE.value,
            build_status_response(
                payload.user_id,
                self.hub.presence.is_online(payload.user_id),
                user.last_seen if user else None,
            ),
        )
