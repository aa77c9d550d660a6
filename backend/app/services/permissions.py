"""Role defaults and permission checks for chat participants."""

from __future__ import annotations

import logging

from app.models import ChatParticipant, ChatPermission, ParticipantRole
from app.services.errors import MissingPermission

logger = logging.getLogger(__name__)

ALL_PERMISSIONS: frozenset[ChatPermission] = frozenset(ChatPermission)

# Roles only seed the permission set when a participant is added; checks
# always read the participant's stored permissions.
DEFAULT_ROLE_PERMISSIONS: dict[ParticipantRole, frozenset[ChatPermission]] = {
    ParticipantRole.OWNER: ALL_PERMISSIONS,
    ParticipantRole.ADMIN: ALL_PERMISSIONS,
    ParticipantRole.MODERATOR: frozenset(
        {
            ChatPermission.SEND_MESSAGES,
            ChatPermission.SEND_ATTACHMENTS,
            ChatPermission.DELETE_OWN_MESSAGES,
            ChatPermission.EDIT_OWN_MESSAGES,
            ChatPermission.PIN_MESSAGES,
            ChatPermission.REACT_TO_MESSAGES,
            ChatPermission.MENTION_USERS,
            ChatPermission.ADD_PARTICIPANTS,
        }
    ),
    ParticipantRole.MEMBER: frozenset(
        {
            ChatPermission.SEND_MESSAGES,
            ChatPermission.SEND_ATTACHMENTS,
            ChatPermission.DELETE_OWN_MESSAGES,
            ChatPermission.EDIT_OWN_MESSAGES,
            ChatPermission.REACT_TO_MESSAGES,
            ChatPermission.MENTION_USERS,
        }
    ),
    ParticipantRole.GUEST: frozenset(
        {
            ChatPermission.SEND_MESSAGES,
            ChatPermission.DELETE_OWN_MESSAGES,
            ChatPermission.EDIT_OWN_MESSAGES,
            ChatPermission.REACT_TO_MESSAGES,
        }
    ),
}


def default_permissions(role: ParticipantRole) -> set[ChatPermission]:
    return set(DEFAULT_ROLE_PERMISSIONS[ParticipantRole(role)])


def has_permission(participant: ChatParticipant, permission: ChatPermission) -> bool:
    return participant.is_active and participant.has_permission(permission)


def require_permission(participant: ChatParticipant, permission: ChatPermission) -> None:
    """Raise :class:`MissingPermission` unless the participant holds *permission*."""

    if not has_permission(participant, permission):
        logger.debug(
            "User %s lacks %s in chat %s",
            participant.user_id,
            permission.value,
            participant.chat_id,
        )
        raise MissingPermission(permission)
