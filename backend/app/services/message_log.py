"""Append-only per-chat message log.

All mutations are validated before anything is written, so a rejected
operation never leaves partial state behind. Sequence numbers are allocated
only when a message is committed, through a single authority per chat.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from pydantic import BaseModel
from sqlalchemy import and_, not_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.core.clock import as_utc, utcnow
from app.models import (
    Chat,
    ChatParticipant,
    ChatPermission,
    ChatType,
    DeleteScope,
    DeliveryStatus,
    Message,
    MessageAttachment,
    MessageEdit,
    MessageMention,
    MessageType,
)
from app.models.payloads import PayloadError, PollPayload, parse_payload
from app.monitoring.metrics import chat_messages_total
from app.services import conversations, delivery, threads
from app.services.errors import (
    AttachmentTooLarge,
    AttachmentTypeNotAllowed,
    ChatArchived,
    DeletingDisabled,
    DeliveryFailed,
    EditingDisabled,
    EmptyMessage,
    FileSharingDisabled,
    ForwardDepthExceeded,
    ForwardingDisabled,
    InvalidDeleteScope,
    InvalidMention,
    InvalidPayload,
    InvalidReply,
    MentionsDisabled,
    MessageDeleted,
    MessageNotFound,
    MessageTooLong,
    NotMessageOwner,
    PinningDisabled,
    ValidationFailed,
)
from app.services.permissions import has_permission, require_permission
from app.services.receipts import commit_idempotent, get_or_create_receipt

logger = logging.getLogger(__name__)

settings = get_settings()


@dataclass(frozen=True, slots=True)
class AttachmentDescriptor:
    """File descriptor produced by the upload service."""

    url: str
    format: str | None = None
    resource_type: str | None = None
    bytes: int = 0
    original_filename: str | None = None

    @property
    def file_format(self) -> str | None:
        if self.format:
            return self.format
        if self.original_filename:
            extension = os.path.splitext(self.original_filename)[1]
            return extension.lstrip(".") or None
        return None


@dataclass(frozen=True, slots=True)
class MentionSpan:
    user_id: int
    start_index: int
    end_index: int


@dataclass(slots=True)
class MessageDraft:
    """Client-composed message before the log accepts it."""

    content: str = ""
    message_type: MessageType = MessageType.TEXT
    attachments: Sequence[AttachmentDescriptor] = ()
    reply_to_message_id: int | None = None
    mentions: Sequence[MentionSpan] = ()
    payload: Any = None
    client_token: str | None = None
    thread_root_id: int | None = None


@dataclass(slots=True)
class _ValidatedDraft:
    payload: BaseModel | None
    mentions: list[MentionSpan]
    reply_snapshot: dict[str, Any] | None
    thread_root: Message | None
    forwarded_from: dict[str, Any] | None = None
    forward_chain: int = 0


class SequenceAllocator:
    """Single allocation authority for per-chat sequence numbers.

    Allocation for one chat is serialised by a process-local lock around a
    row-locked increment of ``Chat.last_sequence``; different chats use
    different locks and proceed in parallel.
    """

    def __init__(self) -> None:
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, chat_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(chat_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[chat_id] = lock
            return lock

    def allocate(self, chat_id: int, db: Session) -> int:
        """Increment the chat counter; the caller must hold :meth:`lock` until commit."""

        stmt = (
            select(Chat)
            .where(Chat.id == chat_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        chat = db.execute(stmt).scalar_one()
        chat.last_sequence = (chat.last_sequence or 0) + 1
        return chat.last_sequence


sequence_allocator = SequenceAllocator()


def get_message(message_id: int, db: Session) -> Message:
    stmt = (
        select(Message)
        .where(Message.id == message_id)
        .options(
            selectinload(Message.attachments),
            selectinload(Message.reactions),
            selectinload(Message.mentions),
            selectinload(Message.edits),
        )
    )
    message = db.execute(stmt).scalar_one_or_none()
    if message is None:
        raise MessageNotFound()
    return message


def _find_by_client_token(chat_id: int, sender_id: int, client_token: str, db: Session) -> Message | None:
    stmt = select(Message).where(
        Message.chat_id == chat_id,
        Message.sender_id == sender_id,
        Message.client_token == client_token,
    )
    return db.execute(stmt).scalar_one_or_none()


def _check_sender(chat_id: int, sender_id: int, db: Session) -> tuple[Chat, ChatParticipant]:
    chat = conversations.get_chat(chat_id, db)
    sender = conversations.require_participant(chat_id, sender_id, db)
    require_permission(sender, ChatPermission.SEND_MESSAGES)
    if chat.is_archived:
        raise ChatArchived()
    if chat.chat_type == ChatType.ANNOUNCEMENT:
        require_permission(sender, ChatPermission.CREATE_ANNOUNCEMENTS)
    return chat, sender


def _validate_content(content: str, has_body: bool) -> None:
    if not content.strip() and not has_body:
        raise EmptyMessage()
    if len(content) > settings.chat_message_max_length:
        raise MessageTooLong(
            f"Message exceeds maximum length of {settings.chat_message_max_length} characters"
        )


def _validate_attachments(
    chat: Chat, sender: ChatParticipant, attachments: Sequence[AttachmentDescriptor]
) -> None:
    if not attachments:
        return
    chat_settings = chat.settings
    if not chat_settings.allow_file_sharing:
        raise FileSharingDisabled()
    require_permission(sender, ChatPermission.SEND_ATTACHMENTS)
    for attachment in attachments:
        if attachment.bytes > chat_settings.max_file_size_bytes:
            raise AttachmentTooLarge(
                f"'{attachment.original_filename or attachment.url}' exceeds "
                f"{chat_settings.max_file_size_mb} MB"
            )
        if not chat_settings.allows_file_type(attachment.file_format):
            raise AttachmentTypeNotAllowed(
                f"File type '{attachment.file_format or 'unknown'}' is not allowed in this chat"
            )


def _validate_mentions(
    chat: Chat,
    author: ChatParticipant,
    content: str,
    mentions: Iterable[MentionSpan],
    db: Session,
) -> list[MentionSpan]:
    spans = list(dict.fromkeys(mentions))
    if not spans:
        return []
    if not chat.settings.allow_mentions:
        raise MentionsDisabled()
    require_permission(author, ChatPermission.MENTION_USERS)

    active_ids = {
        participant.user_id
        for participant in db.execute(
            select(ChatParticipant).where(
                ChatParticipant.chat_id == chat.id, ChatParticipant.is_active.is_(True)
            )
        ).scalars()
    }
    for span in spans:
        if not 0 <= span.start_index < span.end_index <= len(content):
            raise InvalidMention(
                f"Mention span {span.start_index}:{span.end_index} is outside the message content"
            )
        if span.user_id not in active_ids:
            raise InvalidMention(f"User {span.user_id} is not a participant of this chat")
    return spans


def _parse_payload(message_type: MessageType, raw: Any) -> BaseModel | None:
    try:
        payload = parse_payload(message_type, raw)
    except PayloadError as exc:
        raise InvalidPayload(str(exc)) from exc
    # A new poll always starts open, forwarded copies included.
    if isinstance(payload, PollPayload):
        payload = payload.model_copy(update={"closed_at": None, "closed_by_id": None})
    return payload


def _reply_snapshot(chat: Chat, reply_to_message_id: int, db: Session) -> dict[str, Any]:
    target = db.get(Message, reply_to_message_id)
    if target is None or target.chat_id != chat.id:
        raise InvalidReply("Reply target not found in this chat")
    if target.is_deleted_for_everyone:
        raise MessageDeleted("Cannot reply to a deleted message")
    return {
        "message_id": target.id,
        "sender_id": target.sender_id,
        "sender_name": target.sender.name if target.sender is not None else None,
        "content": target.content,
        "message_type": target.message_type.value,
        "attachment_count": len(target.attachments),
        "created_at": as_utc(target.created_at).isoformat(),
    }


def _validate_draft(
    chat: Chat, sender: ChatParticipant, draft: MessageDraft, db: Session
) -> _ValidatedDraft:
    message_type = MessageType(draft.message_type)
    payload = _parse_payload(message_type, draft.payload)
    content = draft.content or ""
    _validate_content(content, bool(draft.attachments) or payload is not None)
    _validate_attachments(chat, sender, draft.attachments)
    mentions = _validate_mentions(chat, sender, content, draft.mentions, db)
    snapshot = (
        _reply_snapshot(chat, draft.reply_to_message_id, db)
        if draft.reply_to_message_id is not None
        else None
    )
    root = (
        threads.resolve_thread_root(chat, draft.thread_root_id, db)
        if draft.thread_root_id is not None
        else None
    )
    return _ValidatedDraft(
        payload=payload,
        mentions=mentions,
        reply_snapshot=snapshot,
        thread_root=root,
    )


def _append(
    chat: Chat,
    sender_id: int,
    draft: MessageDraft,
    validated: _ValidatedDraft,
    db: Session,
    *,
    allocator: SequenceAllocator | None = None,
) -> Message:
    allocator = allocator or sequence_allocator
    message_type = MessageType(draft.message_type)

    with allocator.lock(chat.id):
        sequence = allocator.allocate(chat.id, db)
        now = utcnow()
        message = Message(
            chat_id=chat.id,
            sender_id=sender_id,
            sequence=sequence,
            client_token=draft.client_token,
            content=draft.content or "",
            message_type=message_type,
            payload=validated.payload.model_dump(mode="json") if validated.payload is not None else None,
            delivery_status=delivery.transition(DeliveryStatus.SENDING, DeliveryStatus.SENT),
            reply_to_message_id=draft.reply_to_message_id,
            reply_snapshot=validated.reply_snapshot,
            forwarded_from=validated.forwarded_from,
            forward_chain=validated.forward_chain,
            created_at=now,
            updated_at=now,
        )
        message.attachments = [
            MessageAttachment(
                url=attachment.url,
                format=attachment.file_format,
                resource_type=attachment.resource_type,
                bytes=attachment.bytes,
                original_filename=attachment.original_filename,
            )
            for attachment in draft.attachments
        ]
        message.mentions = [
            MessageMention(
                user_id=span.user_id,
                start_index=span.start_index,
                end_index=span.end_index,
            )
            for span in validated.mentions
        ]
        if validated.thread_root is not None:
            root = threads.lock_thread_root(validated.thread_root.id, db)
            threads.record_thread_reply(root, message)
        chat.last_activity = now
        db.add(message)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if draft.client_token:
                existing = _find_by_client_token(chat.id, sender_id, draft.client_token, db)
                if existing is not None:
                    return existing
            logger.warning("Failed to append message to chat %s", chat.id, exc_info=True)
            raise DeliveryFailed("Message could not be stored") from exc

    db.refresh(message)
    chat_messages_total.labels(message_type.value).inc()
    logger.debug("Appended message %s to chat %s with sequence %s", message.id, chat.id, sequence)
    return message


def send_message(
    chat_id: int,
    sender_id: int,
    draft: MessageDraft,
    db: Session,
    *,
    allocator: SequenceAllocator | None = None,
) -> Message:
    """Validate and durably append a message, returning it in the ``sent`` state.

    Re-sending a draft with an already accepted ``client_token`` returns the
    original message instead of creating a duplicate.
    """

    chat, sender = _check_sender(chat_id, sender_id, db)
    if draft.client_token:
        existing = _find_by_client_token(chat_id, sender_id, draft.client_token, db)
        if existing is not None:
            return existing
    validated = _validate_draft(chat, sender, draft, db)
    return _append(chat, sender_id, draft, validated, db, allocator=allocator)


def reply_in_thread(
    root_message_id: int,
    sender_id: int,
    draft: MessageDraft,
    db: Session,
    *,
    allocator: SequenceAllocator | None = None,
) -> Message:
    """Append *draft* as a reply in the thread anchored at *root_message_id*."""

    root = get_message(root_message_id, db)
    draft.thread_root_id = root.id
    return send_message(root.chat_id, sender_id, draft, db, allocator=allocator)


def _ensure_author_or(
    participant: ChatParticipant,
    message: Message,
    own_permission: ChatPermission,
    any_permission: ChatPermission,
) -> None:
    if message.sender_id == participant.user_id:
        require_permission(participant, own_permission)
    elif not has_permission(participant, any_permission):
        raise NotMessageOwner()


def edit_message(
    message_id: int,
    editor_id: int,
    content: str,
    db: Session,
    *,
    mentions: Sequence[MentionSpan] | None = None,
) -> Message:
    """Replace the content of a message and append one edit history entry."""

    message = get_message(message_id, db)
    chat = conversations.get_chat(message.chat_id, db)
    editor = conversations.require_participant(message.chat_id, editor_id, db)
    if not chat.settings.allow_editing:
        raise EditingDisabled()
    if message.is_deleted:
        raise MessageDeleted()
    _ensure_author_or(
        editor, message, ChatPermission.EDIT_OWN_MESSAGES, ChatPermission.EDIT_ANY_MESSAGES
    )

    _validate_content(content, bool(message.attachments) or message.payload is not None)
    if content == message.content and mentions is None:
        return message

    if mentions is not None:
        spans = _validate_mentions(chat, editor, content, mentions, db)
    else:
        spans = [
            MentionSpan(mention.user_id, mention.start_index, mention.end_index)
            for mention in message.mentions
            if mention.end_index <= len(content)
        ]

    now = utcnow()
    if content != message.content:
        message.edits.append(
            MessageEdit(
                editor_id=editor_id,
                previous_content=message.content,
                new_content=content,
                edited_at=now,
            )
        )
        message.content = content
        message.is_edited = True
        message.edited_at = now

    current = {(mention.user_id, mention.start_index): mention for mention in message.mentions}
    kept: list[MessageMention] = []
    for span in spans:
        mention = current.get((span.user_id, span.start_index))
        if mention is None:
            mention = MessageMention(
                user_id=span.user_id, start_index=span.start_index, end_index=span.end_index
            )
        else:
            mention.end_index = span.end_index
        kept.append(mention)
    message.mentions = kept
    message.updated_at = now
    db.commit()
    db.refresh(message)
    logger.debug("User %s edited message %s", editor_id, message.id)
    return message


def delete_message(message_id: int, actor_id: int, scope: DeleteScope, db: Session) -> Message:
    """Tombstone a message for the author only or for everyone.

    Deleting for everyone clears content, attachments, payload and mentions
    and cannot be undone. Reply snapshots taken earlier are unaffected.
    """

    scope = DeleteScope(scope)
    if scope == DeleteScope.NONE:
        raise InvalidDeleteScope("Delete scope must be 'sender' or 'everyone'")

    message = get_message(message_id, db)
    chat = conversations.get_chat(message.chat_id, db)
    actor = conversations.require_participant(message.chat_id, actor_id, db)
    if not chat.settings.allow_deleting:
        raise DeletingDisabled()
    if message.is_deleted_for_everyone:
        raise MessageDeleted()
    _ensure_author_or(
        actor, message, ChatPermission.DELETE_OWN_MESSAGES, ChatPermission.DELETE_ANY_MESSAGES
    )
    if scope == DeleteScope.SENDER and message.sender_id != actor_id:
        raise InvalidDeleteScope("Only the author can hide a message from their own view")

    now = utcnow()
    if scope == DeleteScope.SENDER:
        if message.deleted_for == DeleteScope.SENDER:
            return message
    else:
        message.content = ""
        message.payload = None
        message.attachments.clear()
        message.mentions.clear()
        message.is_pinned = False
        message.pinned_by_id = None
        message.pinned_at = None
        message.pinned_reason = None

    message.is_deleted = True
    message.deleted_for = scope
    message.deleted_at = now
    message.deleted_by_id = actor_id
    message.updated_at = now
    db.commit()
    db.refresh(message)
    logger.info("User %s deleted message %s for %s", actor_id, message.id, scope.value)
    return message


def forward_message(
    message_id: int,
    actor_id: int,
    target_chat_id: int,
    db: Session,
    *,
    client_token: str | None = None,
    allocator: SequenceAllocator | None = None,
) -> Message:
    """Copy a message into another chat as a new entry with a longer forward chain."""

    source = get_message(message_id, db)
    source_chat = conversations.get_chat(source.chat_id, db)
    conversations.require_participant(source.chat_id, actor_id, db)
    if source.is_deleted_for_everyone or not source.is_visible_to(actor_id):
        raise MessageDeleted()
    if not source_chat.settings.allow_forwarding:
        raise ForwardingDisabled()

    depth = (source.forward_chain or 0) + 1
    if depth > settings.chat_forward_max_depth:
        raise ForwardDepthExceeded(
            f"Forward chain would reach {depth}, the limit is {settings.chat_forward_max_depth}"
        )

    target_chat, sender = _check_sender(target_chat_id, actor_id, db)
    if client_token:
        existing = _find_by_client_token(target_chat_id, actor_id, client_token, db)
        if existing is not None:
            return existing

    origin = source.forwarded_from or {}
    draft = MessageDraft(
        content=source.content,
        message_type=source.message_type,
        attachments=[
            AttachmentDescriptor(
                url=attachment.url,
                format=attachment.format,
                resource_type=attachment.resource_type,
                bytes=attachment.bytes,
                original_filename=attachment.original_filename,
            )
            for attachment in source.attachments
        ],
        payload=source.payload,
        client_token=client_token,
    )
    validated = _validate_draft(target_chat, sender, draft, db)
    validated.forwarded_from = {
        "message_id": source.id,
        "chat_id": source.chat_id,
        "sender_id": source.sender_id,
        "sender_name": source.sender.name if source.sender is not None else None,
        "original_message_id": origin.get("original_message_id", source.id),
        "created_at": as_utc(source.created_at).isoformat(),
    }
    validated.forward_chain = depth
    message = _append(target_chat, actor_id, draft, validated, db, allocator=allocator)
    logger.info(
        "User %s forwarded message %s to chat %s (chain %d)", actor_id, source.id, target_chat_id, depth
    )
    return message


def _set_pin(message_id: int, actor_id: int, pinned: bool, db: Session, reason: str | None) -> Message:
    message = get_message(message_id, db)
    chat = conversations.get_chat(message.chat_id, db)
    actor = conversations.require_participant(message.chat_id, actor_id, db)
    if not chat.settings.allow_pinning:
        raise PinningDisabled()
    require_permission(actor, ChatPermission.PIN_MESSAGES)
    if pinned and message.is_deleted:
        raise MessageDeleted("Deleted messages cannot be pinned")

    message.is_pinned = pinned
    message.pinned_by_id = actor_id if pinned else None
    message.pinned_at = utcnow() if pinned else None
    message.pinned_reason = reason if pinned else None
    db.commit()
    db.refresh(message)
    return message


def pin_message(message_id: int, actor_id: int, db: Session, *, reason: str | None = None) -> Message:
    return _set_pin(message_id, actor_id, True, db, reason)


def unpin_message(message_id: int, actor_id: int, db: Session) -> Message:
    return _set_pin(message_id, actor_id, False, db, None)


def acknowledge_delivery(
    chat_id: int, user_id: int, message_ids: Iterable[int], db: Session
) -> list[Message]:
    """Record client receipt of messages; returns those whose status advanced."""

    conversations.require_participant(chat_id, user_id, db)
    ids = sorted({int(item) for item in message_ids})
    if not ids:
        return []

    def apply() -> list[Message]:
        now = utcnow()
        stmt = select(Message).where(
            Message.chat_id == chat_id,
            Message.id.in_(ids),
            Message.sender_id != user_id,
        )
        changed: list[Message] = []
        for message in db.execute(stmt).scalars():
            receipt = get_or_create_receipt(message.id, user_id, db)
            if receipt.delivered_at is None:
                receipt.delivered_at = now
            status = delivery.advance(message.delivery_status, DeliveryStatus.DELIVERED)
            if status != message.delivery_status:
                message.delivery_status = status
                changed.append(message)
        return changed

    return commit_idempotent(apply, db)


def _visible_to(viewer_id: int):
    return not_(and_(Message.deleted_for == DeleteScope.SENDER, Message.sender_id == viewer_id))


def list_messages(
    chat_id: int,
    viewer_id: int,
    db: Session,
    *,
    before_sequence: int | None = None,
    limit: int | None = None,
) -> list[Message]:
    """Return a page of top-level messages in ascending sequence order.

    Thread replies are listed through the thread they belong to.
    """

    conversations.require_participant(chat_id, viewer_id, db)
    page_size = limit or settings.chat_history_default_limit
    page_size = max(1, min(page_size, settings.chat_history_max_limit))

    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id, Message.thread_id.is_(None), _visible_to(viewer_id))
        .options(
            selectinload(Message.attachments),
            selectinload(Message.reactions),
            selectinload(Message.mentions),
        )
        .order_by(Message.sequence.desc())
        .limit(page_size)
    )
    if before_sequence is not None:
        stmt = stmt.where(Message.sequence < before_sequence)
    items = list(db.execute(stmt).scalars())
    items.reverse()
    return items


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_messages(
    user_id: int,
    query: str,
    db: Session,
    *,
    chat_id: int | None = None,
    limit: int | None = None,
) -> list[Message]:
    """Find messages whose content contains *query*, newest first.

    Only chats the user is an active participant of are searched. Tombstones
    and the user's own sender-only deletions never match.
    """

    term = (query or "").strip()
    if not term:
        raise ValidationFailed("Search query must not be empty")
    if chat_id is not None:
        conversations.require_participant(chat_id, user_id, db)
    page_size = limit or settings.chat_history_default_limit
    page_size = max(1, min(page_size, settings.chat_history_max_limit))

    stmt = (
        select(Message)
        .join(
            ChatParticipant,
            and_(
                ChatParticipant.chat_id == Message.chat_id,
                ChatParticipant.user_id == user_id,
                ChatParticipant.is_active.is_(True),
            ),
        )
        .where(
            Message.deleted_for != DeleteScope.EVERYONE,
            _visible_to(user_id),
            Message.content.ilike(_like_pattern(term), escape="\\"),
        )
        .options(
            selectinload(Message.attachments),
            selectinload(Message.reactions),
            selectinload(Message.mentions),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(page_size)
    )
    if chat_id is not None:
        stmt = stmt.where(Message.chat_id == chat_id)
    return list(db.execute(stmt).scalars())


def list_pinned_messages(chat_id: int, viewer_id: int, db: Session) -> list[Message]:
    conversations.require_participant(chat_id, viewer_id, db)
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id, Message.is_pinned.is_(True), _visible_to(viewer_id))
        .options(selectinload(Message.attachments), selectinload(Message.reactions))
        .order_by(Message.pinned_at.desc(), Message.sequence.desc())
    )
    return list(db.execute(stmt).scalars())


def list_thread(root_message_id: int, viewer_id: int, db: Session) -> tuple[Message, list[Message]]:
    root = get_message(root_message_id, db)
    conversations.require_participant(root.chat_id, viewer_id, db)
    if root.thread_id is not None:
        root = get_message(root.thread_id, db)
    return root, threads.list_thread_replies(root, viewer_id, db)
