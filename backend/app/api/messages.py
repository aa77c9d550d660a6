"""HTTP endpoints for working with individual chat messages."""

from __future__ import annotations

from typing import Iterable

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.api.events import publish_message
from app.database import get_db
from app.models import DeleteScope, Message, User
from app.schemas import (
    ForwardRequest,
    MentionIn,
    MessageAttachmentRead,
    MessageAuthor,
    MessageCreate,
    MessageMentionRead,
    MessageRead,
    MessageReactionSummary,
    MessageUpdate,
    PinRequest,
    PollRead,
    PollVoteRequest,
    ReactionRequest,
    ThreadRead,
)
from app.services import message_log, polls, reactions, read_tracker
from app.services.message_log import AttachmentDescriptor, MentionSpan, MessageDraft

router = APIRouter(prefix="/messages", tags=["messages"])


def serialize_message(message: Message, current_user_id: int | None) -> MessageRead:
    reaction_summaries = [
        MessageReactionSummary(
            emoji=summary.emoji,
            count=summary.count,
            reacted=summary.reacted,
            user_ids=summary.user_ids,
        )
        for summary in reactions.summarize_reactions(message.reactions, current_user_id)
    ]
    return MessageRead(
        id=message.id,
        chat_id=message.chat_id,
        sequence=message.sequence,
        sender_id=message.sender_id,
        sender=MessageAuthor.model_validate(message.sender) if message.sender is not None else None,
        client_token=message.client_token,
        content=message.content,
        message_type=message.message_type,
        payload=message.payload,
        delivery_status=message.delivery_status,
        reply_to_message_id=message.reply_to_message_id,
        reply_snapshot=message.reply_snapshot,
        forwarded_from=message.forwarded_from,
        forward_chain=message.forward_chain or 0,
        thread_id=message.thread_id,
        thread_replies_count=message.thread_replies_count or 0,
        last_thread_reply=message.last_thread_reply,
        is_pinned=message.is_pinned,
        pinned_by_id=message.pinned_by_id,
        pinned_at=message.pinned_at,
        pinned_reason=message.pinned_reason,
        is_edited=message.is_edited,
        edited_at=message.edited_at,
        is_deleted=message.is_deleted,
        deleted_for=message.deleted_for,
        deleted_at=message.deleted_at,
        created_at=message.created_at,
        updated_at=message.updated_at,
        attachments=[MessageAttachmentRead.model_validate(item) for item in message.attachments],
        mentions=[MessageMentionRead.model_validate(item) for item in message.mentions],
        reactions=reaction_summaries,
    )


def serialize_messages(messages: Iterable[Message], current_user_id: int | None) -> list[MessageRead]:
    return [serialize_message(message, current_user_id) for message in messages]


def _mention_spans(mentions: Iterable[MentionIn]) -> list[MentionSpan]:
    return [MentionSpan(item.user_id, item.start_index, item.end_index) for item in mentions]


def build_draft(payload: MessageCreate) -> MessageDraft:
    """Translate a request body into a draft for the message log."""

    return MessageDraft(
        content=payload.content,
        message_type=payload.message_type,
        attachments=[
            AttachmentDescriptor(
                url=item.url,
                format=item.format,
                resource_type=item.resource_type,
                bytes=item.bytes,
                original_filename=item.original_filename,
            )
            for item in payload.attachments
        ],
        reply_to_message_id=payload.reply_to_message_id,
        mentions=_mention_spans(payload.mentions),
        payload=payload.payload,
        client_token=payload.client_token,
    )


@router.get("/search", response_model=list[MessageRead])
def search_messages(
    q: str = Query(..., min_length=1, max_length=200),
    chat_id: int | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    """Search message content across the current user's chats."""

    messages = message_log.search_messages(current_user.id, q, db, chat_id=chat_id, limit=limit)
    return serialize_messages(messages, current_user.id)


@router.patch("/{message_id}", response_model=MessageRead)
async def edit_message(
    message_id: int,
    payload: MessageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Replace the content of a message."""

    mentions = _mention_spans(payload.mentions) if payload.mentions is not None else None
    message = message_log.edit_message(message_id, current_user.id, payload.content, db, mentions=mentions)
    serialized = serialize_message(message, current_user.id)
    await publish_message(message.chat_id, "edited", serialized)
    return serialized


@router.delete("/{message_id}", response_model=MessageRead)
async def delete_message(
    message_id: int,
    scope: DeleteScope = Query(default=DeleteScope.EVERYONE),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Delete a message for the author only or for everyone."""

    message = message_log.delete_message(message_id, current_user.id, scope, db)
    serialized = serialize_message(message, current_user.id)
    if message.is_deleted_for_everyone:
        await publish_message(message.chat_id, "deleted", serialized)
    return serialized


@router.post("/{message_id}/reactions", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def add_reaction(
    message_id: int,
    payload: ReactionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Add a reaction to a message; repeating it changes nothing."""

    if reactions.add_reaction(message_id, current_user.id, payload.emoji, db):
        message = message_log.get_message(message_id, db)
        await publish_message(message.chat_id, "reactions", serialize_message(message, None))
    return serialize_message(message_log.get_message(message_id, db), current_user.id)


@router.delete("/{message_id}/reactions", response_model=MessageRead)
async def remove_reaction(
    message_id: int,
    emoji: str = Query(..., min_length=1, max_length=32),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Remove the current user's reaction from a message."""

    if reactions.remove_reaction(message_id, current_user.id, emoji, db):
        message = message_log.get_message(message_id, db)
        await publish_message(message.chat_id, "reactions", serialize_message(message, None))
    return serialize_message(message_log.get_message(message_id, db), current_user.id)


@router.post("/{message_id}/thread", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def reply_in_thread(
    message_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    reply = message_log.reply_in_thread(message_id, current_user.id, build_draft(payload), db)
    serialized = serialize_message(message_log.get_message(reply.id, db), current_user.id)
    await publish_message(reply.chat_id, "thread_reply", serialized)
    return serialized


@router.get("/{message_id}/thread", response_model=ThreadRead)
def get_thread(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ThreadRead:
    """Return a thread root with its replies in sequence order."""

    root, replies = message_log.list_thread(message_id, current_user.id, db)
    return ThreadRead(
        root=serialize_message(root, current_user.id),
        replies=serialize_messages(replies, current_user.id),
    )


@router.post("/{message_id}/forward", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def forward_message(
    message_id: int,
    payload: ForwardRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    message = message_log.forward_message(
        message_id, current_user.id, payload.target_chat_id, db, client_token=payload.client_token
    )
    serialized = serialize_message(message_log.get_message(message.id, db), current_user.id)
    await publish_message(message.chat_id, "created", serialized)
    return serialized


@router.put("/{message_id}/pin", response_model=MessageRead)
async def pin_message(
    message_id: int,
    payload: PinRequest | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    reason = payload.reason if payload is not None else None
    message = message_log.pin_message(message_id, current_user.id, db, reason=reason)
    serialized = serialize_message(message, current_user.id)
    await publish_message(message.chat_id, "pinned", serialized)
    return serialized


@router.delete("/{message_id}/pin", response_model=MessageRead)
async def unpin_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    message = message_log.unpin_message(message_id, current_user.id, db)
    serialized = serialize_message(message, current_user.id)
    await publish_message(message.chat_id, "unpinned", serialized)
    return serialized


@router.post("/{message_id}/mentions/read")
def mark_mention_read(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict[str, int]:
    updated = read_tracker.mark_mention_read(message_id, current_user.id, db)
    return {"updated": updated}


async def _publish_poll(message_id: int, db: Session) -> None:
    message = message_log.get_message(message_id, db)
    await publish_message(message.chat_id, "poll", serialize_message(message, None))


@router.get("/{message_id}/poll", response_model=PollRead)
def get_poll(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PollRead:
    return PollRead.model_validate(polls.poll_results(message_id, current_user.id, db))


@router.post("/{message_id}/poll/votes", response_model=PollRead)
async def vote_in_poll(
    message_id: int,
    payload: PollVoteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PollRead:
    """Replace the current user's choice in a poll."""

    results = polls.cast_vote(message_id, current_user.id, payload.option_indexes, db)
    await _publish_poll(message_id, db)
    return PollRead.model_validate(results)


@router.delete("/{message_id}/poll/votes", response_model=PollRead)
async def retract_poll_vote(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PollRead:
    results = polls.retract_vote(message_id, current_user.id, db)
    await _publish_poll(message_id, db)
    return PollRead.model_validate(results)


@router.post("/{message_id}/poll/close", response_model=PollRead)
async def close_poll(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PollRead:
    """Stop a poll from accepting votes."""

    results = polls.close_poll(message_id, current_user.id, db)
    await _publish_poll(message_id, db)
    return PollRead.model_validate(results)
