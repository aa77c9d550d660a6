"""Read cursors, unread counts and read receipt merging."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from sqlalchemy import and_, func, not_, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.models import ChatParticipant, DeleteScope, DeliveryStatus, Message, MessageMention, MessageReceipt
from app.monitoring.metrics import chat_read_cursor_moves_total
from app.services import conversations, delivery
from app.services.errors import MessageNotFound, NotFound
from app.services.receipts import commit_idempotent, get_or_create_receipt

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadResult:
    """Outcome of a mark-read call."""

    participant: ChatParticipant
    advanced: bool
    status_changes: list[Message]


@dataclass(slots=True)
class ReadState:
    chat_id: int
    user_id: int
    last_read_message_id: int | None
    last_read_sequence: int
    unread_count: int
    unread_mentions: int


def mark_read(chat_id: int, user_id: int, message_id: int, db: Session) -> ReadResult:
    """Advance the participant's read watermark to *message_id*.

    The cursor only moves forward: marking an older or the same message is a
    no-op. Messages by other senders covered by the move receive a read
    receipt and their delivery status advances to ``read``.
    """

    participant = conversations.require_participant(chat_id, user_id, db)
    target = db.get(Message, message_id)
    if target is None or target.chat_id != chat_id:
        raise MessageNotFound()

    if target.sequence <= (participant.last_read_sequence or 0):
        return ReadResult(participant=participant, advanced=False, status_changes=[])

    def apply() -> list[Message] | None:
        locked = db.execute(
            select(ChatParticipant)
            .where(ChatParticipant.id == participant.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        previous_sequence = locked.last_read_sequence or 0
        if target.sequence <= previous_sequence:
            return None

        now = utcnow()
        participant.last_read_message_id = target.id
        participant.last_read_sequence = target.sequence
        participant.last_read_at = now

        stmt = select(Message).where(
            Message.chat_id == chat_id,
            Message.sequence > previous_sequence,
            Message.sequence <= target.sequence,
            Message.sender_id != user_id,
        )
        changed: list[Message] = []
        for message in db.execute(stmt).scalars():
            receipt = get_or_create_receipt(message.id, user_id, db)
            if receipt.delivered_at is None:
                receipt.delivered_at = now
            if receipt.read_at is None:
                receipt.read_at = now
            status = delivery.advance(message.delivery_status, DeliveryStatus.READ)
            if status != message.delivery_status:
                message.delivery_status = status
                changed.append(message)
        return changed

    changed = commit_idempotent(apply, db)
    if changed is None:
        return ReadResult(participant=participant, advanced=False, status_changes=[])
    chat_read_cursor_moves_total.inc()
    logger.debug(
        "User %s read chat %s up to sequence %s (%d status changes)",
        user_id,
        chat_id,
        target.sequence,
        len(changed),
    )
    return ReadResult(participant=participant, advanced=True, status_changes=changed)


def _unread_filter(participant: ChatParticipant):
    return and_(
        Message.chat_id == participant.chat_id,
        Message.sequence > (participant.last_read_sequence or 0),
        Message.sender_id != participant.user_id,
        Message.deleted_for != DeleteScope.EVERYONE,
        not_(
            and_(
                Message.deleted_for == DeleteScope.SENDER,
                Message.sender_id == participant.user_id,
            )
        ),
    )


def unread_count(chat_id: int, user_id: int, db: Session) -> int:
    """Count other-authored, non-tombstoned messages past the read cursor."""

    participant = conversations.require_participant(chat_id, user_id, db)
    stmt = select(func.count(Message.id)).where(_unread_filter(participant))
    return int(db.execute(stmt).scalar_one())


def unread_mentions_count(chat_id: int, user_id: int, db: Session) -> int:
    conversations.require_participant(chat_id, user_id, db)
    stmt = (
        select(func.count(MessageMention.id))
        .join(Message, Message.id == MessageMention.message_id)
        .where(
            Message.chat_id == chat_id,
            MessageMention.user_id == user_id,
            MessageMention.is_read.is_(False),
            Message.deleted_for != DeleteScope.EVERYONE,
        )
    )
    return int(db.execute(stmt).scalar_one())


def mark_mention_read(message_id: int, user_id: int, db: Session) -> int:
    """Flag the user's mentions in a message as read; returns how many changed.

    Mention read flags are independent of the message read cursor.
    """

    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFound()
    conversations.require_participant(message.chat_id, user_id, db)
    stmt = select(MessageMention).where(
        MessageMention.message_id == message_id,
        MessageMention.user_id == user_id,
    )
    mentions = list(db.execute(stmt).scalars())
    if not mentions:
        raise NotFound("No mention of this user in the message")
    now = utcnow()
    changed = 0
    for mention in mentions:
        if not mention.is_read:
            mention.is_read = True
            mention.read_at = now
            changed += 1
    db.commit()
    return changed


def chat_read_state(chat_id: int, user_id: int, db: Session) -> ReadState:
    participant = conversations.require_participant(chat_id, user_id, db)
    return ReadState(
        chat_id=chat_id,
        user_id=user_id,
        last_read_message_id=participant.last_read_message_id,
        last_read_sequence=participant.last_read_sequence or 0,
        unread_count=unread_count(chat_id, user_id, db),
        unread_mentions=unread_mentions_count(chat_id, user_id, db),
    )


def merge_read_receipts(
    existing: Mapping[int, datetime], incoming: Iterable[tuple[int, datetime]]
) -> dict[int, datetime]:
    """Union of (user, read_at) pairs keeping the latest ``read_at`` per user.

    The merge is commutative, associative and idempotent, so receipts from
    several sessions or replicas converge regardless of arrival order.
    """

    merged = {user_id: as_utc(read_at) for user_id, read_at in existing.items()}
    for user_id, read_at in incoming:
        read_at = as_utc(read_at)
        current = merged.get(user_id)
        if current is None or read_at > current:
            merged[user_id] = read_at
    return merged


def apply_read_receipts(
    message_id: int, incoming: Iterable[tuple[int, datetime]], db: Session
) -> dict[int, datetime]:
    """Fold replica receipts for a message into the store using :func:`merge_read_receipts`."""

    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFound()
    incoming = list(incoming)

    def apply() -> dict[int, datetime]:
        stmt = select(MessageReceipt).where(
            MessageReceipt.message_id == message_id, MessageReceipt.read_at.is_not(None)
        )
        current = {receipt.user_id: receipt.read_at for receipt in db.execute(stmt).scalars()}
        merged = merge_read_receipts(current, incoming)
        for user_id, read_at in merged.items():
            if user_id == message.sender_id:
                continue
            receipt = get_or_create_receipt(message_id, user_id, db)
            receipt.read_at = read_at
            if receipt.delivered_at is None:
                receipt.delivered_at = read_at
        if any(user_id != message.sender_id for user_id in merged):
            message.delivery_status = delivery.advance(message.delivery_status, DeliveryStatus.READ)
        return merged

    return commit_idempotent(apply, db)
