from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models import ChatType, DeleteScope, DeliveryStatus
from app.monitoring.metrics import chat_read_cursor_moves_total
from app.services import conversations, message_log, read_tracker
from app.services.errors import MessageNotFound, NotFound
from app.services.message_log import MentionSpan, MessageDraft


@pytest.fixture()
def pair(db_session, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)
    return chat, alice, bob


def send(db_session, chat, user, content="hello", **kwargs):
    return message_log.send_message(chat.id, user.id, MessageDraft(content=content, **kwargs), db_session)


def test_read_watermark_is_monotonic(db_session, pair) -> None:
    """Reading m1 at sequence 7 marks it read; an older mark-read never regresses it."""

    chat, alice, bob = pair
    earlier = [send(db_session, chat, alice, f"warmup {index}") for index in range(6)]
    m1 = send(db_session, chat, alice, "m1")
    assert m1.sequence == 7
    assert m1.delivery_status == DeliveryStatus.SENT
    moves_before = chat_read_cursor_moves_total.value()

    result = read_tracker.mark_read(chat.id, bob.id, m1.id, db_session)
    assert result.advanced is True
    assert {message.id for message in result.status_changes} == {item.id for item in earlier} | {m1.id}
    db_session.refresh(m1)
    assert m1.delivery_status == DeliveryStatus.READ
    assert chat_read_cursor_moves_total.value() == moves_before + 1

    stale = read_tracker.mark_read(chat.id, bob.id, earlier[2].id, db_session)
    assert stale.advanced is False
    assert stale.participant.last_read_sequence == 7
    db_session.refresh(m1)
    assert m1.delivery_status == DeliveryStatus.READ


def test_unread_count_skips_own_and_tombstoned_messages(db_session, pair) -> None:
    chat, alice, bob = pair
    first = send(db_session, chat, alice, "one")
    send(db_session, chat, bob, "mine")
    third = send(db_session, chat, alice, "three")
    send(db_session, chat, alice, "four")

    assert read_tracker.unread_count(chat.id, bob.id, db_session) == 3

    message_log.delete_message(third.id, alice.id, DeleteScope.EVERYONE, db_session)
    assert read_tracker.unread_count(chat.id, bob.id, db_session) == 2

    read_tracker.mark_read(chat.id, bob.id, first.id, db_session)
    assert read_tracker.unread_count(chat.id, bob.id, db_session) == 1


def test_mark_read_rejects_messages_from_other_chats(db_session, pair, make_user) -> None:
    chat, alice, bob = pair
    carol = make_user("carol")
    other, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [carol.id], db_session)
    foreign = send(db_session, other, alice, "elsewhere")

    with pytest.raises(MessageNotFound):
        read_tracker.mark_read(chat.id, bob.id, foreign.id, db_session)


def test_mentions_are_read_independently_of_the_cursor(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")
    mention = send(db_session, chat, alice, "@bob look", mentions=[MentionSpan(bob.id, 0, 4)])
    later = send(db_session, chat, alice, "anyone?")

    read_tracker.mark_read(chat.id, bob.id, later.id, db_session)
    state = read_tracker.chat_read_state(chat.id, bob.id, db_session)
    assert state.unread_count == 0
    assert state.unread_mentions == 1

    assert read_tracker.mark_mention_read(mention.id, bob.id, db_session) == 1
    assert read_tracker.mark_mention_read(mention.id, bob.id, db_session) == 0
    assert read_tracker.unread_mentions_count(chat.id, bob.id, db_session) == 0

    with pytest.raises(NotFound):
        read_tracker.mark_mention_read(later.id, bob.id, db_session)


def test_merge_read_receipts_is_commutative_and_idempotent() -> None:
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    replica_a = [(1, base), (2, base + timedelta(minutes=5))]
    replica_b = [(1, base + timedelta(minutes=1)), (3, base)]

    ab = read_tracker.merge_read_receipts(read_tracker.merge_read_receipts({}, replica_a), replica_b)
    ba = read_tracker.merge_read_receipts(read_tracker.merge_read_receipts({}, replica_b), replica_a)
    twice = read_tracker.merge_read_receipts(ab, replica_a + replica_b)

    assert ab == ba == twice
    assert ab == {
        1: base + timedelta(minutes=1),
        2: base + timedelta(minutes=5),
        3: base,
    }


def test_apply_read_receipts_advances_status(db_session, pair) -> None:
    chat, alice, bob = pair
    message = send(db_session, chat, alice, "hello")
    read_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    merged = read_tracker.apply_read_receipts(message.id, [(bob.id, read_at)], db_session)

    assert merged == {bob.id: read_at}
    db_session.refresh(message)
    assert message.delivery_status == DeliveryStatus.READ
