# backend/chatline/services/group_service.py
"""
Group administration.

Mutations require the acting user to be a group admin. Every membership
change invalidates the membership index and moves live connections into or
out of the group's room, so broadcasts follow membership immediately.

A group never ends up without an admin while it has participants: when the
last admin leaves or is removed, the longest-standing remaining participant
is promoted; demoting the last admin is refused.
"""

import logging
from typing import Iterable, List, Optional

from ..core.enums import ConversationType
from ..core.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    NotFoundException,
    NotParticipantException,
    ValidationException,
)
from ..schemas.records import ConversationRecord, GroupView
from ..storage.base import DirectoryStore
from .base import BaseService
from .realtime.events import OutboundEvent, conversation_room
from .realtime.membership import ConversationMembershipIndex
from .realtime.presence import PresenceRegistry
from .realtime.rooms import RoomRouter
from .realtime.sync import join_users_to_room, remove_users_from_room

logger = logging.getLogger(__name__)


class GroupService(BaseService):
    def __init__(
        self,
        store: DirectoryStore,
        membership: ConversationMembershipIndex,
        presence: Optional[PresenceRegistry] = None,
        router: Optional[RoomRouter] = None,
    ):
        super().__init__(store)
        self.membership = membership
        self.presence = presence
        self.router = router

    # Helpers

    async def _load_group(self, group_id: str) -> ConversationRecord:
        group = await self.store.get_conversation(group_id)
        if group is None or group.type != ConversationType.GROUP:
            raise NotFoundException("Group not found", code="GROUP_NOT_FOUND", details={"group_id": group_id})
        return group

    async def _load_group_as_admin(self, group_id: str, admin_id: str) -> ConversationRecord:
        group = await self._load_group(group_id)
        if not group.is_admin(admin_id):
            raise ForbiddenException(
                "Only group admins can do this", code="NOT_GROUP_ADMIN", details={"group_id": group_id}
            )
        return group

    def _rooms_added(self, group: ConversationRecord, user_ids: Iterable[str]) -> None:
        if self.presence is None or self.router is None:
            return
        joined = join_users_to_room(self.presence, self.router, user_ids, conversation_room(group.id))
        if joined:
            self.router.send_to_connections(joined, OutboundEvent.CONVERSATION_NEW.value, group.to_wire())

    def _rooms_removed(self, group_id: str, user_ids: Iterable[str]) -> None:
        if self.presence is None or self.router is None:
            return
        remove_users_from_room(self.presence, self.router, user_ids, conversation_room(group_id))

    async def _remove_and_keep_an_admin(self, group: ConversationRecord, user_id: str) -> None:
        await self.store.remove_participants(group.id, [user_id], keep_admin=True)
        self.membership.invalidate(group.id)
        self._rooms_removed(group.id, [user_id])

    # Operations

    @BaseService.measure_operation("create_group")
    async def create_group(
        self,
        name: str,
        creator_id: str,
        member_ids: Iterable[str],
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> ConversationRecord:
        name = (name or "").strip()
        if not name:
            raise ValidationException("Group name is required", code="GROUP_NAME_REQUIRED")
        participants = list(dict.fromkeys([creator_id, *member_ids]))
        group = await self.store.create_conversation(
            ConversationType.GROUP,
            participants,
            [creator_id],
            created_by=creator_id,
            name=name,
            description=description,
            picture=picture,
        )
        self.membership.invalidate(group.id)
        self._rooms_added(group, participants)
        self.logger.info(f"Group {group.id} created by {creator_id}")
        return group

    @BaseService.measure_operation("get_group")
    async def get_group(self, group_id: str, user_id: str) -> GroupView:
        group = await self._load_group(group_id)
        if not group.is_participant(user_id):
            raise NotParticipantException(group_id)
        members = []
        for participant_id in group.participant_ids:
            user = await self.store.get_user(participant_id)
            if user is not None:
                members.append(user)
        return GroupView(**group.model_dump(), members=members)

    @BaseService.measure_operation("add_member")
    async def add_member(self, group_id: str, user_id: str, admin_id: str) -> ConversationRecord:
        group = await self._load_group_as_admin(group_id, admin_id)
        if group.is_participant(user_id):
            return group
        await self.store.add_participants(group_id, [user_id])
        self.membership.invalidate(group_id)
        updated = await self._load_group(group_id)
        self._rooms_added(updated, [user_id])
        return updated

    @BaseService.measure_operation("remove_member")
    async def remove_member(self, group_id: str, user_id: str, admin_id: str) -> None:
        group = await self._load_group_as_admin(group_id, admin_id)
        if not group.is_participant(user_id):
            raise NotFoundException("Member not found", code="MEMBER_NOT_FOUND")
        await self._remove_and_keep_an_admin(group, user_id)

    @BaseService.measure_operation("leave_group")
    async def leave_group(self, group_id: str, user_id: str) -> None:
        group = await self._load_group(group_id)
        if not group.is_participant(user_id):
            raise NotParticipantException(group_id)
        await self._remove_and_keep_an_admin(group, user_id)

    @BaseService.measure_operation("update_group")
    async def update_group(
        self,
        group_id: str,
        admin_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> ConversationRecord:
        await self._load_group_as_admin(group_id, admin_id)
        if name is not None and not name.strip():
            raise ValidationException("Group name cannot be empty", code="GROUP_NAME_REQUIRED")
        updated = await self.store.update_conversation_details(
            group_id,
            name=name.strip() if name is not None else None,
            description=description,
            picture=picture,
        )
        if updated is None:
            raise NotFoundException("Group not found", code="GROUP_NOT_FOUND")
        return updated

    @BaseService.measure_operation("make_admin")
    async def make_admin(self, group_id: str, user_id: str, admin_id: str) -> List[str]:
        group = await self._load_group_as_admin(group_id, admin_id)
        if not group.is_participant(user_id):
            raise ValidationException("Only members can become admins", code="NOT_A_MEMBER")
        await self.store.add_admins(group_id, [user_id])
        return (await self._load_group(group_id)).admin_ids

    @BaseService.measure_operation("remove_admin")
    async def remove_admin(self, group_id: str, user_id: str, admin_id: str) -> List[str]:
        group = await self._load_group_as_admin(group_id, admin_id)
        if not group.is_admin(user_id):
            return group.admin_ids
        if not await self.store.remove_admins(group_id, [user_id], keep_one=True):
            raise BusinessRuleException(
                "A group needs at least one admin", code="LAST_ADMIN", details={"group_id": group_id}
            )
        return (await self._load_group(group_id)).admin_ids
