"""Votes on poll messages and the results derived from them.

The poll definition lives in the message payload; each chosen option is one
``poll_votes`` row. Counts are always derived from those rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.models import ChatParticipant, ChatPermission, Message, MessageType, PollVote
from app.models.payloads import PollPayload
from app.monitoring.metrics import chat_poll_votes_total
from app.services import conversations
from app.services.errors import (
    InvalidPollOption,
    MessageDeleted,
    MessageNotFound,
    NotAPoll,
    PermissionDenied,
    PollClosed,
)
from app.services.permissions import has_permission
from app.services.receipts import commit_idempotent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollOptionResult:
    index: int
    text: str
    vote_count: int = 0
    voter_ids: list[int] = field(default_factory=list)
    selected: bool = False


@dataclass(slots=True)
class PollResults:
    message_id: int
    question: str
    allow_multiple: bool
    is_anonymous: bool
    is_open: bool
    expires_at: datetime | None
    closed_at: datetime | None
    total_voters: int
    options: list[PollOptionResult]

    @property
    def total_votes(self) -> int:
        return sum(option.vote_count for option in self.options)


def _load_poll(
    message_id: int, user_id: int, db: Session
) -> tuple[Message, ChatParticipant, PollPayload]:
    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFound()
    participant = conversations.require_participant(message.chat_id, user_id, db)
    if message.is_deleted_for_everyone:
        raise MessageDeleted("Poll has been deleted")
    if message.message_type != MessageType.POLL:
        raise NotAPoll()
    payload = message.typed_payload
    if not isinstance(payload, PollPayload):
        raise NotAPoll()
    return message, participant, payload


def is_open(poll: PollPayload, moment: datetime | None = None) -> bool:
    """A poll accepts votes until it is closed or its expiry passes."""

    if poll.closed_at is not None:
        return False
    expires_at = as_utc(poll.expires_at)
    return expires_at is None or expires_at > (moment or utcnow())


def _require_open(poll: PollPayload) -> None:
    if not is_open(poll):
        raise PollClosed()


def _clean_selection(poll: PollPayload, option_indexes: Iterable[int]) -> list[int]:
    selection = list(option_indexes)
    if not selection:
        raise InvalidPollOption("Select at least one option")
    if len(set(selection)) != len(selection):
        raise InvalidPollOption("Options must not repeat")
    if any(index < 0 or index >= len(poll.options) for index in selection):
        raise InvalidPollOption("Option does not exist")
    if len(selection) > 1 and not poll.allow_multiple:
        raise InvalidPollOption("This poll accepts a single option")
    return sorted(selection)


def _user_votes(message_id: int, user_id: int, db: Session) -> list[PollVote]:
    stmt = select(PollVote).where(PollVote.message_id == message_id, PollVote.user_id == user_id)
    return list(db.execute(stmt).scalars())


def cast_vote(message_id: int, user_id: int, option_indexes: Iterable[int], db: Session) -> PollResults:
    """Make *option_indexes* the user's selection, replacing any earlier one."""

    message, _, poll = _load_poll(message_id, user_id, db)
    _require_open(poll)
    selection = _clean_selection(poll, option_indexes)

    def apply() -> bool:
        current = _user_votes(message_id, user_id, db)
        kept = {vote.option_index for vote in current}
        changed = False
        for vote in current:
            if vote.option_index not in selection:
                db.delete(vote)
                changed = True
        for index in selection:
            if index not in kept:
                db.add(PollVote(message_id=message_id, user_id=user_id, option_index=index))
                changed = True
        return changed

    if commit_idempotent(apply, db):
        chat_poll_votes_total.labels("vote").inc()
        logger.debug("User %s voted %s on poll %s", user_id, selection, message_id)
    return _results(message, poll, user_id, db)


def retract_vote(message_id: int, user_id: int, db: Session) -> PollResults:
    """Withdraw the user's selection; withdrawing nothing is a no-op."""

    message, _, poll = _load_poll(message_id, user_id, db)
    _require_open(poll)
    votes = _user_votes(message_id, user_id, db)
    if votes:
        for vote in votes:
            db.delete(vote)
        db.commit()
        chat_poll_votes_total.labels("retract").inc()
    return _results(message, poll, user_id, db)


def close_poll(message_id: int, user_id: int, db: Session) -> PollResults:
    """Stop accepting votes. Allowed for the author and for chat admins."""

    message, participant, poll = _load_poll(message_id, user_id, db)
    if message.sender_id != user_id and not has_permission(participant, ChatPermission.EDIT_CHAT_INFO):
        raise PermissionDenied("Only the author or a chat admin can close this poll")
    if poll.closed_at is None:
        poll = poll.model_copy(update={"closed_at": utcnow(), "closed_by_id": user_id})
        message.payload = poll.model_dump(mode="json")
        message.updated_at = utcnow()
        db.commit()
        db.refresh(message)
        logger.info("Poll %s closed by user %s", message_id, user_id)
    return _results(message, poll, user_id, db)


def poll_results(message_id: int, viewer_id: int, db: Session) -> PollResults:
    message, _, poll = _load_poll(message_id, viewer_id, db)
    return _results(message, poll, viewer_id, db)


def _results(message: Message, poll: PollPayload, viewer_id: int, db: Session) -> PollResults:
    stmt = select(PollVote).where(PollVote.message_id == message.id).order_by(PollVote.id)
    votes = list(db.execute(stmt).scalars())

    options = [PollOptionResult(index=index, text=text) for index, text in enumerate(poll.options)]
    for vote in votes:
        if vote.option_index >= len(options):
            continue
        option = options[vote.option_index]
        option.vote_count += 1
        if vote.user_id == viewer_id:
            option.selected = True
        if not poll.is_anonymous:
            option.voter_ids.append(vote.user_id)
    for option in options:
        option.voter_ids.sort()

    return PollResults(
        message_id=message.id,
        question=poll.question,
        allow_multiple=poll.allow_multiple,
        is_anonymous=poll.is_anonymous,
        is_open=is_open(poll),
        expires_at=as_utc(poll.expires_at),
        closed_at=as_utc(poll.closed_at),
        total_voters=len({vote.user_id for vote in votes}),
        options=options,
    )
