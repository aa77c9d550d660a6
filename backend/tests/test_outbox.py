from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from app.models import DeliveryStatus
from app.services.errors import CancellationNotAllowed, DeliveryFailed, InvalidTransition, NotParticipant
from app.services.outbox import Outbox


@dataclass
class FakeServerMessage:
    id: int
    sequence: int
    client_token: str | None
    delivery_status: DeliveryStatus = DeliveryStatus.SENT


class FakeServer:
    def __init__(self) -> None:
        self.sequence = 6
        self.calls = 0
        self.fail_with: Exception | None = None

    async def send(self, chat_id, draft):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.sequence += 1
        return FakeServerMessage(id=100 + self.sequence, sequence=self.sequence, client_token=draft.client_token)


@pytest.mark.anyio
async def test_compose_then_submit_reconciles_by_client_token() -> None:
    outbox = Outbox()
    server = FakeServer()

    entry = outbox.compose(5, "hello")
    assert entry.temp_id.startswith("temp-")
    assert entry.status == DeliveryStatus.SENDING
    assert entry.client_token

    submitted = await outbox.submit(entry.temp_id, server.send)

    assert submitted is entry
    assert entry.status == DeliveryStatus.SENT
    assert entry.sequence == 7
    assert entry.message_id == 107

    duplicate = FakeServerMessage(id=999, sequence=99, client_token=entry.client_token)
    assert outbox.reconcile(duplicate) is entry
    assert entry.message_id == 107


@pytest.mark.anyio
async def test_transport_failure_marks_failed_and_retry_resends() -> None:
    outbox = Outbox()
    server = FakeServer()
    server.fail_with = ConnectionError("offline")
    entry = outbox.compose(5, "hello")

    await outbox.submit(entry.temp_id, server.send)
    assert entry.status == DeliveryStatus.FAILED
    assert entry.error == "offline"
    assert entry.temp_id in outbox

    with pytest.raises(InvalidTransition):
        await outbox.submit(entry.temp_id, server.send)

    token = entry.client_token
    outbox.retry(entry.temp_id)
    server.fail_with = None
    await outbox.submit(entry.temp_id, server.send)

    assert entry.status == DeliveryStatus.SENT
    assert entry.client_token == token
    assert entry.error is None


@pytest.mark.anyio
async def test_storage_failure_is_retryable() -> None:
    outbox = Outbox()
    server = FakeServer()
    server.fail_with = DeliveryFailed()
    entry = outbox.compose(5, "hello")

    await outbox.submit(entry.temp_id, server.send)

    assert entry.status == DeliveryStatus.FAILED


@pytest.mark.anyio
async def test_rejections_drop_the_entry() -> None:
    outbox = Outbox()
    server = FakeServer()
    server.fail_with = NotParticipant()
    entry = outbox.compose(5, "hello")

    with pytest.raises(NotParticipant):
        await outbox.submit(entry.temp_id, server.send)
    assert entry.temp_id not in outbox
    assert len(outbox) == 0


@pytest.mark.anyio
async def test_late_confirmation_recovers_failed_entry() -> None:
    outbox = Outbox()
    server = FakeServer()
    server.fail_with = TimeoutError()
    entry = outbox.compose(5, "hello")
    await outbox.submit(entry.temp_id, server.send)
    assert entry.status == DeliveryStatus.FAILED

    outbox.reconcile(FakeServerMessage(id=42, sequence=3, client_token=entry.client_token))

    assert entry.status == DeliveryStatus.SENT
    assert entry.message_id == 42


@pytest.mark.anyio
async def test_cancel_only_before_the_server_accepts() -> None:
    outbox = Outbox()
    server = FakeServer()
    pending = outbox.compose(5, "draft")
    outbox.cancel(pending.temp_id)
    assert pending.temp_id not in outbox

    sent = outbox.compose(5, "hello")
    await outbox.submit(sent.temp_id, server.send)
    with pytest.raises(CancellationNotAllowed):
        outbox.cancel(sent.temp_id)


@pytest.mark.anyio
async def test_status_updates_are_monotonic_and_release_waiters() -> None:
    outbox = Outbox()
    server = FakeServer()
    entry = outbox.compose(5, "hello")
    await outbox.submit(entry.temp_id, server.send)

    waiter = asyncio.create_task(outbox.wait_for_delivery(entry.temp_id, timeout=1.0))
    await asyncio.sleep(0)
    outbox.apply_status(entry.message_id, DeliveryStatus.READ)
    result = await waiter

    assert result.status == DeliveryStatus.READ
    assert result.delivery_pending is False

    outbox.apply_status(entry.message_id, DeliveryStatus.DELIVERED)
    assert entry.status == DeliveryStatus.READ
    assert outbox.apply_status(12345, DeliveryStatus.READ) is None

    assert outbox.prune() == [entry]
    assert len(outbox) == 0


@pytest.mark.anyio
async def test_slow_acknowledgement_flags_pending_without_failing() -> None:
    outbox = Outbox()
    server = FakeServer()
    entry = outbox.compose(5, "hello")
    await outbox.submit(entry.temp_id, server.send)

    result = await outbox.wait_for_delivery(entry.temp_id, timeout=0.01)

    assert result.status == DeliveryStatus.SENT
    assert result.delivery_pending is True
