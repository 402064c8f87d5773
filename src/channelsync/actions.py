from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from .backend import ChatBackend
from .capabilities import (
    ADD_MEMBER,
    DELETE_CHANNEL,
    EDIT_CHANNEL,
    REMOVE_MEMBER,
    require,
    require_owner,
)
from .content import is_tombstone, tombstone
from .errors import AlreadyExists, PermissionDenied
from .events import MessageRecord

logger = logging.getLogger(__name__)

EDITABLE_CHANNEL_FIELDS = frozenset({"name", "description", "status"})


class ChannelActions:
    """Mutating channel and message operations for one signed-in user.

    Every call is checked against the capability table before anything is
    sent; a refusal from the backend surfaces as an authoritative
    ``PermissionDenied``.
    """

    def __init__(self, user_id: str, role: str, backend: ChatBackend) -> None:
        self.user_id = user_id
        self.role = role
        self._backend = backend

    async def edit_channel(self, channel_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        require(self.role, EDIT_CHANNEL)
        unknown = set(updates) - EDITABLE_CHANNEL_FIELDS
        if unknown:
            raise ValueError(f"cannot edit channel fields: {', '.join(sorted(unknown))}")
        logger.info("%s editing channel %s", self.user_id, channel_id)
        return await self._backend.update_channel(channel_id, updates)

    async def set_status(self, channel_id: str, status: str, *, announce: bool = True) -> Dict[str, Any]:
        """Change the channel status; ``announce`` posts a system update line."""

        channel = await self.edit_channel(channel_id, {"status": status})
        if announce:
            await self._backend.send_message(
                channel_id, self.user_id, f"Status changed to {status}", is_system_update=True
            )
        return channel

    async def delete_channel(self, channel_id: str) -> None:
        require(self.role, DELETE_CHANNEL)
        logger.info("%s deleting channel %s", self.user_id, channel_id)
        await self._backend.delete_channel(channel_id)

    async def add_member(self, channel_id: str, user_id: str) -> None:
        require(self.role, ADD_MEMBER)
        members = await self._backend.list_members(channel_id)
        if user_id in members:
            raise AlreadyExists("User is already a member")
        await self._backend.add_member(channel_id, user_id, self.user_id)

    async def remove_member(self, channel_id: str, user_id: str) -> None:
        require(self.role, REMOVE_MEMBER)
        await self._backend.remove_member(channel_id, user_id)

    async def edit_message(self, message: MessageRecord, new_content: str) -> MessageRecord:
        require_owner(self.user_id, message.user_id, message.is_system_update)
        if is_tombstone(message.content):
            raise PermissionDenied("edit_message")
        return await self._backend.edit_message(message.id, new_content)

    async def delete_message(self, message: MessageRecord) -> MessageRecord:
        """Soft-delete: the row is kept with its content tombstoned."""

        require_owner(self.user_id, message.user_id, message.is_system_update)
        if is_tombstone(message.content):
            return message
        return await self._backend.edit_message(message.id, tombstone(message.content))
