"""Client-side outbox for optimistic message composition.

Entries are created with a temporary id and a client token, shown
immediately as ``sending`` and reconciled with the server copy by client
token once the log accepts them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence

from app.config import get_settings
from app.models import DeliveryStatus, MessageType
from app.services import delivery
from app.services.errors import CancellationNotAllowed, ChatError, DeliveryFailed, InvalidTransition, NotFound
from app.services.message_log import AttachmentDescriptor, MentionSpan, MessageDraft

logger = logging.getLogger(__name__)

settings = get_settings()


class ServerMessage(Protocol):
    id: int
    sequence: int
    client_token: str | None
    delivery_status: DeliveryStatus


Sender = Callable[[int, MessageDraft], Awaitable[ServerMessage]]

_DELIVERED = {DeliveryStatus.DELIVERED, DeliveryStatus.READ}


@dataclass(slots=True)
class OutboxEntry:
    temp_id: str
    chat_id: int
    draft: MessageDraft
    status: DeliveryStatus = DeliveryStatus.SENDING
    message_id: int | None = None
    sequence: int | None = None
    delivery_pending: bool = False
    error: str | None = None
    _delivered: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def client_token(self) -> str:
        return self.draft.client_token or ""


class Outbox:
    """Pending outgoing messages of one client session."""

    def __init__(self) -> None:
        self._entries: dict[str, OutboxEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, temp_id: object) -> bool:
        return temp_id in self._entries

    def entries(self, chat_id: int | None = None) -> list[OutboxEntry]:
        return [
            entry for entry in self._entries.values() if chat_id is None or entry.chat_id == chat_id
        ]

    def get(self, temp_id: str) -> OutboxEntry:
        entry = self._entries.get(temp_id)
        if entry is None:
            raise NotFound(f"No outbox entry {temp_id}")
        return entry

    def compose(
        self,
        chat_id: int,
        content: str = "",
        *,
        message_type: MessageType = MessageType.TEXT,
        attachments: Sequence[AttachmentDescriptor] = (),
        mentions: Sequence[MentionSpan] = (),
        reply_to_message_id: int | None = None,
        thread_root_id: int | None = None,
        payload: Any = None,
    ) -> OutboxEntry:
        """Create an optimistic entry; nothing is sent until :meth:`submit`."""

        draft = MessageDraft(
            content=content,
            message_type=message_type,
            attachments=tuple(attachments),
            mentions=tuple(mentions),
            reply_to_message_id=reply_to_message_id,
            thread_root_id=thread_root_id,
            payload=payload,
            client_token=uuid.uuid4().hex,
        )
        entry = OutboxEntry(temp_id=f"temp-{uuid.uuid4().hex}", chat_id=chat_id, draft=draft)
        self._entries[entry.temp_id] = entry
        return entry

    async def submit(self, temp_id: str, sender: Sender) -> OutboxEntry:
        """Send an entry through *sender* and reconcile the result.

        Validation and permission rejections drop the entry and propagate.
        Transport or storage failures mark it ``failed``; it stays in the
        outbox until retried or cancelled.
        """

        entry = self.get(temp_id)
        if entry.status != DeliveryStatus.SENDING:
            raise InvalidTransition(f"Entry {temp_id} is {entry.status.value}, not sending")
        try:
            server_message = await sender(entry.chat_id, entry.draft)
        except (DeliveryFailed, ConnectionError, TimeoutError) as exc:
            entry.status = delivery.transition(entry.status, DeliveryStatus.FAILED)
            entry.error = str(exc) or exc.__class__.__name__
            logger.warning("Outbox entry %s failed: %s", temp_id, entry.error)
            return entry
        except ChatError:
            self._entries.pop(temp_id, None)
            raise
        reconciled = self.reconcile(server_message)
        return reconciled or entry

    def reconcile(self, server_message: ServerMessage) -> OutboxEntry | None:
        """Attach the server copy to the entry with the same client token.

        Messages with unknown tokens and repeated confirmations are ignored.
        """

        token = server_message.client_token
        if not token:
            return None
        entry = next(
            (item for item in self._entries.values() if item.client_token == token), None
        )
        if entry is None:
            return None
        if entry.message_id is not None:
            return entry
        entry.message_id = server_message.id
        entry.sequence = server_message.sequence
        entry.error = None
        if entry.status == DeliveryStatus.FAILED:
            entry.status = delivery.transition(entry.status, DeliveryStatus.SENDING)
        entry.status = delivery.transition(entry.status, DeliveryStatus.SENT)
        self._apply(entry, server_message.delivery_status)
        return entry

    def retry(self, temp_id: str) -> OutboxEntry:
        """Move a failed entry back to ``sending`` keeping its id and token."""

        entry = self.get(temp_id)
        entry.status = delivery.transition(entry.status, DeliveryStatus.SENDING)
        entry.error = None
        return entry

    def cancel(self, temp_id: str) -> None:
        entry = self.get(temp_id)
        if entry.status not in {DeliveryStatus.SENDING, DeliveryStatus.FAILED}:
            raise CancellationNotAllowed()
        del self._entries[temp_id]

    def apply_status(self, message_id: int, status: DeliveryStatus) -> OutboxEntry | None:
        """Apply a receipt-driven status change; stale or backward updates are ignored."""

        entry = next(
            (item for item in self._entries.values() if item.message_id == message_id), None
        )
        if entry is None:
            return None
        self._apply(entry, DeliveryStatus(status))
        return entry

    def _apply(self, entry: OutboxEntry, status: DeliveryStatus) -> None:
        entry.status = delivery.advance(entry.status, status)
        if entry.status in _DELIVERED:
            entry.delivery_pending = False
            entry._delivered.set()

    async def wait_for_delivery(self, temp_id: str, timeout: float | None = None) -> OutboxEntry:
        """Wait a bounded time for a delivered or read status.

        On timeout the entry keeps its ``sent`` status and is flagged
        ``delivery_pending``; a slow acknowledgement is never a failure.
        """

        entry = self.get(temp_id)
        if entry.status in _DELIVERED:
            return entry
        if timeout is None:
            timeout = settings.chat_delivery_ack_timeout_seconds
        try:
            await asyncio.wait_for(entry._delivered.wait(), timeout)
        except asyncio.TimeoutError:
            entry.delivery_pending = True
        return entry

    def prune(self) -> list[OutboxEntry]:
        """Drop entries that reached ``read``; returns the removed entries."""

        done = [entry for entry in self._entries.values() if entry.status == DeliveryStatus.READ]
        for entry in done:
            del self._entries[entry.temp_id]
        return done
