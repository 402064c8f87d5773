"""Static role -> action table consulted before every mutating call."""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import NotOwner, PermissionDenied

ADMIN = "ADMIN"
SENIOR_MERCHANDISER = "SENIOR_MERCHANDISER"
JUNIOR_MERCHANDISER = "JUNIOR_MERCHANDISER"
SENIOR_MANAGER = "SENIOR_MANAGER"
JUNIOR_MANAGER = "JUNIOR_MANAGER"

ROLES = (ADMIN, SENIOR_MERCHANDISER, JUNIOR_MERCHANDISER, SENIOR_MANAGER, JUNIOR_MANAGER)

CREATE_ORDER = "create_order"
EDIT_ORDER = "edit_order"
DELETE_ORDER = "delete_order"
CREATE_CHANNEL = "create_channel"
EDIT_CHANNEL = "edit_channel"
DELETE_CHANNEL = "delete_channel"
ADD_MEMBER = "add_member"
REMOVE_MEMBER = "remove_member"
CHANGE_ROLE = "change_role"
ADD_TEAM_MEMBER = "add_team_member"
SEND_MESSAGE = "send_message"

ACTIONS = (
    CREATE_ORDER,
    EDIT_ORDER,
    DELETE_ORDER,
    CREATE_CHANNEL,
    EDIT_CHANNEL,
    DELETE_CHANNEL,
    ADD_MEMBER,
    REMOVE_MEMBER,
    CHANGE_ROLE,
    ADD_TEAM_MEMBER,
    SEND_MESSAGE,
)

_CHANNEL_MANAGEMENT = (CREATE_CHANNEL, EDIT_CHANNEL, DELETE_CHANNEL, ADD_MEMBER, REMOVE_MEMBER)
_ORDER_MANAGEMENT = (CREATE_ORDER, EDIT_ORDER, DELETE_ORDER)

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    ADMIN: frozenset(_ORDER_MANAGEMENT + _CHANNEL_MANAGEMENT + (CHANGE_ROLE, ADD_TEAM_MEMBER, SEND_MESSAGE)),
    SENIOR_MERCHANDISER: frozenset(_ORDER_MANAGEMENT + _CHANNEL_MANAGEMENT + (SEND_MESSAGE,)),
    JUNIOR_MERCHANDISER: frozenset((SEND_MESSAGE,)),
    SENIOR_MANAGER: frozenset(_CHANNEL_MANAGEMENT + (SEND_MESSAGE,)),
    JUNIOR_MANAGER: frozenset((SEND_MESSAGE,)),
}


def capabilities_for(role: str) -> FrozenSet[str]:
    """Return the immutable action set for ``role``; unknown roles get nothing."""

    return ROLE_CAPABILITIES.get(role, frozenset())


def can(role: str, action: str) -> bool:
    return action in capabilities_for(role)


def require(role: str, action: str) -> None:
    if not can(role, action):
        raise PermissionDenied(action, role=role)


def can_edit_message(user_id: str, author_id: str, is_system_update: bool) -> bool:
    return author_id == user_id and not is_system_update


def can_delete_message(user_id: str, author_id: str, is_system_update: bool) -> bool:
    return can_edit_message(user_id, author_id, is_system_update)


def require_owner(user_id: str, author_id: str, is_system_update: bool) -> None:
    if not can_edit_message(user_id, author_id, is_system_update):
        raise NotOwner("not your message")
