"""Thread roots and reply counters."""

from __future__ import annotations

from sqlalchemy import and_, not_, select
from sqlalchemy.orm import Session, selectinload

from app.models import Chat, DeleteScope, Message
from app.services.errors import InvalidReply, MessageNotFound, ThreadingDisabled


def resolve_thread_root(chat: Chat, message_id: int, db: Session) -> Message:
    """Return the root message a reply to *message_id* belongs to.

    Replying to a thread reply attaches to the original root, so threads never
    nest.
    """

    if not chat.settings.allow_threads:
        raise ThreadingDisabled()
    target = db.get(Message, message_id)
    if target is None or target.chat_id != chat.id:
        raise MessageNotFound("Thread root not found in this chat")
    if target.thread_id is not None:
        root = db.get(Message, target.thread_id)
        if root is None:
            raise InvalidReply("Thread root no longer exists")
        return root
    return target


def lock_thread_root(root_id: int, db: Session) -> Message:
    """Re-read the root row for update so reply counters see committed values."""

    stmt = (
        select(Message)
        .where(Message.id == root_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one()


def record_thread_reply(root: Message, reply: Message) -> None:
    """Attach *reply* to *root*; the root must come from :func:`lock_thread_root`."""

    reply.thread_id = root.id
    root.thread_replies_count = (root.thread_replies_count or 0) + 1
    root.last_thread_reply = reply.created_at


def list_thread_replies(root: Message, viewer_id: int, db: Session) -> list[Message]:
    stmt = (
        select(Message)
        .where(
            Message.thread_id == root.id,
            not_(and_(Message.deleted_for == DeleteScope.SENDER, Message.sender_id == viewer_id)),
        )
        .options(
            selectinload(Message.attachments),
            selectinload(Message.reactions),
            selectinload(Message.mentions),
        )
        .order_by(Message.sequence.asc())
    )
    return list(db.execute(stmt).scalars())
