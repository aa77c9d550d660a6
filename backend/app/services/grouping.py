"""Visual grouping of consecutive messages for chat views.

A new group starts when the sender changes or the gap to the previous
message exceeds the window. The pass is left to right with no backtracking,
and the only state carried from one page to the next is the last message's
``(sender_id, created_at)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, Iterable, Protocol, TypeVar

from app.core.clock import as_utc
from app.models.enums import DeleteScope

DEFAULT_GROUP_WINDOW = timedelta(minutes=5)


class GroupableMessage(Protocol):
    sender_id: int
    created_at: datetime
    sequence: int
    deleted_for: DeleteScope


M = TypeVar("M", bound=GroupableMessage)


@dataclass(frozen=True, slots=True)
class GroupAnchor:
    """Boundary state of the previous page."""

    sender_id: int
    created_at: datetime


@dataclass(slots=True)
class MessageGroup(Generic[M]):
    sender_id: int
    messages: list[M] = field(default_factory=list)
    continues_previous: bool = False
    unread_count: int = 0

    @property
    def started_at(self) -> datetime:
        return as_utc(self.messages[0].created_at)

    @property
    def ended_at(self) -> datetime:
        return as_utc(self.messages[-1].created_at)


def anchor_from(message: GroupableMessage) -> GroupAnchor:
    return GroupAnchor(sender_id=message.sender_id, created_at=as_utc(message.created_at))


def starts_new_group(
    previous: GroupAnchor | None, message: GroupableMessage, window: timedelta
) -> bool:
    if previous is None:
        return True
    if message.sender_id != previous.sender_id:
        return True
    return as_utc(message.created_at) - previous.created_at > window


def group_messages(
    messages: Iterable[M],
    *,
    window: timedelta = DEFAULT_GROUP_WINDOW,
    anchor: GroupAnchor | None = None,
    viewer_id: int | None = None,
    read_sequence: int | None = None,
) -> list[MessageGroup[M]]:
    """Split an ordered run of messages into visual groups.

    *anchor* is the last message of the preceding page (see
    :func:`anchor_from`); when the first message continues it, the first group
    is flagged ``continues_previous``. With *viewer_id* and *read_sequence*
    each group reports how many live messages from other senders are
    unread.
    """

    groups: list[MessageGroup[M]] = []
    previous = anchor
    for message in messages:
        if not groups or starts_new_group(previous, message, window):
            groups.append(
                MessageGroup(
                    sender_id=message.sender_id,
                    continues_previous=not groups
                    and not starts_new_group(previous, message, window),
                )
            )
        group = groups[-1]
        group.messages.append(message)
        if (
            read_sequence is not None
            and message.sequence > read_sequence
            and message.sender_id != viewer_id
            and message.deleted_for != DeleteScope.EVERYONE
        ):
            group.unread_count += 1
        previous = anchor_from(message)
    return groups
