"""Reaction set per message and its derived aggregation."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import ChatParticipant, ChatPermission, Message, MessageReaction
from app.monitoring.metrics import chat_reactions_total
from app.services import conversations
from app.services.errors import MessageDeleted, MessageNotFound, ReactionsDisabled, ValidationFailed
from app.services.permissions import require_permission
from app.services.receipts import commit_idempotent

logger = logging.getLogger(__name__)

MAX_EMOJI_LENGTH = 32


@dataclass(slots=True)
class ReactionSummary:
    emoji: str
    count: int
    user_ids: list[int] = field(default_factory=list)
    reacted: bool = False


def _load_target(message_id: int, user_id: int, db: Session) -> tuple[Message, ChatParticipant]:
    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFound()
    return message, conversations.require_participant(message.chat_id, user_id, db)


def _clean_emoji(emoji: str) -> str:
    cleaned = (emoji or "").strip()
    if not cleaned or len(cleaned) > MAX_EMOJI_LENGTH:
        raise ValidationFailed("Emoji must be between 1 and 32 characters")
    return cleaned


def _find(message_id: int, user_id: int, emoji: str, db: Session) -> MessageReaction | None:
    stmt = select(MessageReaction).where(
        MessageReaction.message_id == message_id,
        MessageReaction.user_id == user_id,
        MessageReaction.emoji == emoji,
    )
    return db.execute(stmt).scalar_one_or_none()


def add_reaction(message_id: int, user_id: int, emoji: str, db: Session) -> bool:
    """Add ``(message, user, emoji)`` if absent. Returns whether a row was created.

    Adding an existing reaction is a no-op, never a toggle.
    """

    emoji = _clean_emoji(emoji)
    message, participant = _load_target(message_id, user_id, db)
    if not message.chat.settings.allow_reactions:
        raise ReactionsDisabled()
    require_permission(participant, ChatPermission.REACT_TO_MESSAGES)
    if message.is_deleted_for_everyone:
        raise MessageDeleted("Cannot react to a deleted message")

    def apply() -> bool:
        if _find(message_id, user_id, emoji, db) is not None:
            return False
        db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji))
        return True

    created = commit_idempotent(apply, db)
    if created:
        chat_reactions_total.labels("add").inc()
        logger.debug("User %s reacted %s to message %s", user_id, emoji, message_id)
    return created


def remove_reaction(message_id: int, user_id: int, emoji: str, db: Session) -> bool:
    """Remove ``(message, user, emoji)``; absent reactions are a no-op."""

    emoji = _clean_emoji(emoji)
    _load_target(message_id, user_id, db)
    reaction = _find(message_id, user_id, emoji, db)
    if reaction is None:
        return False
    db.delete(reaction)
    db.commit()
    chat_reactions_total.labels("remove").inc()
    return True


def summarize_reactions(
    reactions: Iterable[MessageReaction], viewer_id: int | None = None
) -> list[ReactionSummary]:
    """Group reactions by emoji. Counts are always derived, never stored."""

    grouped: dict[str, set[int]] = defaultdict(set)
    for reaction in reactions:
        grouped[reaction.emoji].add(reaction.user_id)

    summaries: list[ReactionSummary] = []
    for emoji, user_ids in sorted(grouped.items()):
        ordered = sorted(user_ids)
        summaries.append(
            ReactionSummary(
                emoji=emoji,
                count=len(ordered),
                user_ids=ordered,
                reacted=viewer_id is not None and viewer_id in user_ids,
            )
        )
    return summaries
