from __future__ import annotations

import pytest

from app.models import ChatType, DeleteScope, DeliveryStatus, MessageType
from app.monitoring.metrics import chat_messages_total
from app.services import conversations, message_log
from app.services.errors import (
    AttachmentTooLarge,
    AttachmentTypeNotAllowed,
    ChatArchived,
    EmptyMessage,
    FileSharingDisabled,
    ForwardDepthExceeded,
    InvalidDeleteScope,
    InvalidMention,
    InvalidPayload,
    InvalidReply,
    MessageDeleted,
    MessageTooLong,
    MissingPermission,
    NotMessageOwner,
    NotParticipant,
    ValidationFailed,
)
from app.services.message_log import AttachmentDescriptor, MentionSpan, MessageDraft


@pytest.fixture()
def team(db_session, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    chat, _ = conversations.create_chat(
        alice.id, ChatType.GROUP, [bob.id, carol.id], db_session, name="Team"
    )
    return chat, alice, bob, carol


def send(db_session, chat, user, content="hello", **kwargs):
    return message_log.send_message(chat.id, user.id, MessageDraft(content=content, **kwargs), db_session)


def test_sequences_are_gapless_and_status_is_sent(db_session, team) -> None:
    chat, alice, bob, _ = team
    before = chat_messages_total.value("text")

    first = send(db_session, chat, alice, "one")
    second = send(db_session, chat, bob, "two")
    third = send(db_session, chat, alice, "three")

    assert [first.sequence, second.sequence, third.sequence] == [1, 2, 3]
    assert first.delivery_status == DeliveryStatus.SENT
    assert chat_messages_total.value("text") == before + 3


def test_client_token_makes_send_idempotent(db_session, team) -> None:
    chat, alice, _, _ = team

    first = send(db_session, chat, alice, "hello", client_token="tok-1")
    repeat = send(db_session, chat, alice, "hello", client_token="tok-1")
    other = send(db_session, chat, alice, "hello", client_token="tok-2")

    assert repeat.id == first.id
    assert other.sequence == first.sequence + 1


def test_rejected_messages_do_not_consume_sequences(db_session, team) -> None:
    chat, alice, _, _ = team

    with pytest.raises(EmptyMessage):
        send(db_session, chat, alice, "   ")
    with pytest.raises(MessageTooLong):
        send(db_session, chat, alice, "x" * 4001)

    accepted = send(db_session, chat, alice, "finally")
    assert accepted.sequence == 1


def test_non_participants_and_archived_chats_are_rejected(db_session, team, make_user) -> None:
    chat, alice, _, _ = team
    outsider = make_user("mallory")

    with pytest.raises(NotParticipant):
        send(db_session, chat, outsider)

    conversations.set_archived(chat.id, alice.id, True, db_session)
    with pytest.raises(ChatArchived):
        send(db_session, chat, alice)


def test_attachment_rules_follow_chat_settings(db_session, team) -> None:
    chat, alice, _, _ = team

    with pytest.raises(AttachmentTypeNotAllowed):
        send(db_session, chat, alice, "", attachments=[AttachmentDescriptor(url="s3://a", original_filename="run.exe")])
    with pytest.raises(AttachmentTooLarge):
        send(
            db_session,
            chat,
            alice,
            "",
            attachments=[AttachmentDescriptor(url="s3://b", format="pdf", bytes=51 * 1024 * 1024)],
        )

    message = send(
        db_session,
        chat,
        alice,
        "",
        message_type=MessageType.DOCUMENT,
        attachments=[AttachmentDescriptor(url="s3://c", original_filename="report.PDF", bytes=1024)],
    )
    assert [attachment.format for attachment in message.attachments] == ["PDF"]

    conversations.update_settings(chat.id, alice.id, {"allow_file_sharing": False}, db_session)
    with pytest.raises(FileSharingDisabled):
        send(db_session, chat, alice, "", attachments=[AttachmentDescriptor(url="s3://d", format="png")])


def test_mentions_must_target_active_participants_within_content(db_session, team, make_user) -> None:
    chat, alice, bob, _ = team
    outsider = make_user("mallory")

    with pytest.raises(InvalidMention):
        send(db_session, chat, alice, "@bob", mentions=[MentionSpan(bob.id, 0, 10)])
    with pytest.raises(InvalidMention):
        send(db_session, chat, alice, "@mallory", mentions=[MentionSpan(outsider.id, 0, 8)])

    message = send(db_session, chat, alice, "@bob hi", mentions=[MentionSpan(bob.id, 0, 4)])
    assert [(mention.user_id, mention.start_index, mention.end_index) for mention in message.mentions] == [
        (bob.id, 0, 4)
    ]


def test_typed_payloads_are_validated(db_session, team) -> None:
    chat, alice, _, _ = team

    with pytest.raises(InvalidPayload):
        send(db_session, chat, alice, "", message_type=MessageType.POLL)
    with pytest.raises(InvalidPayload):
        send(db_session, chat, alice, "", message_type=MessageType.POLL, payload={"question": "?", "options": ["a"]})
    with pytest.raises(InvalidPayload):
        send(db_session, chat, alice, "hi", payload={"kind": "link", "url": "https://example.com"})

    poll = send(
        db_session,
        chat,
        alice,
        "",
        message_type=MessageType.POLL,
        payload={"question": "Lunch?", "options": ["Pizza", "Sushi"]},
    )
    assert poll.payload["kind"] == "poll"
    assert poll.typed_payload.options == ["Pizza", "Sushi"]


def test_reply_keeps_snapshot_after_original_is_deleted(db_session, team) -> None:
    chat, alice, bob, _ = team
    original = send(db_session, chat, alice, "original text")
    reply = send(db_session, chat, bob, "replying", reply_to_message_id=original.id)

    message_log.delete_message(original.id, alice.id, DeleteScope.EVERYONE, db_session)
    db_session.refresh(reply)

    assert reply.reply_snapshot["content"] == "original text"
    assert reply.reply_snapshot["sender_id"] == alice.id
    with pytest.raises(MessageDeleted):
        send(db_session, chat, bob, "again", reply_to_message_id=original.id)


def test_reply_target_must_be_in_same_chat(db_session, team, make_user) -> None:
    chat, alice, bob, _ = team
    other, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)
    elsewhere = send(db_session, other, alice, "elsewhere")

    with pytest.raises(InvalidReply):
        send(db_session, chat, alice, "reply", reply_to_message_id=elsewhere.id)


def test_edit_appends_history_and_identical_edit_is_noop(db_session, team) -> None:
    chat, alice, bob, _ = team
    message = send(db_session, chat, bob, "first draft")

    edited = message_log.edit_message(message.id, bob.id, "second draft", db_session)
    assert edited.is_edited is True
    assert [(edit.previous_content, edit.new_content) for edit in edited.edits] == [
        ("first draft", "second draft")
    ]

    same = message_log.edit_message(message.id, bob.id, "second draft", db_session)
    assert len(same.edits) == 1

    with pytest.raises(NotMessageOwner):
        message_log.edit_message(message.id, team[3].id, "hijack", db_session)


def test_delete_scopes(db_session, team) -> None:
    chat, alice, bob, carol = team
    message = send(db_session, chat, bob, "secret")

    with pytest.raises(NotMessageOwner):
        message_log.delete_message(message.id, carol.id, DeleteScope.EVERYONE, db_session)
    with pytest.raises(InvalidDeleteScope):
        message_log.delete_message(message.id, alice.id, DeleteScope.SENDER, db_session)

    hidden = message_log.delete_message(message.id, bob.id, DeleteScope.SENDER, db_session)
    assert hidden.deleted_for == DeleteScope.SENDER
    assert [item.id for item in message_log.list_messages(chat.id, bob.id, db_session)] == []
    assert [item.id for item in message_log.list_messages(chat.id, alice.id, db_session)] == [message.id]

    tombstone = message_log.delete_message(message.id, alice.id, DeleteScope.EVERYONE, db_session)
    assert tombstone.content == ""
    assert tombstone.deleted_for == DeleteScope.EVERYONE
    with pytest.raises(MessageDeleted):
        message_log.delete_message(message.id, alice.id, DeleteScope.EVERYONE, db_session)
    with pytest.raises(MessageDeleted):
        message_log.edit_message(message.id, bob.id, "resurrect", db_session)


def test_forward_chain_is_capped(db_session, team, monkeypatch) -> None:
    chat, alice, bob, _ = team
    monkeypatch.setattr(message_log.settings, "chat_forward_max_depth", 2)
    other, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)

    original = send(db_session, chat, alice, "pass it on")
    first = message_log.forward_message(original.id, alice.id, other.id, db_session)
    second = message_log.forward_message(first.id, bob.id, chat.id, db_session)

    assert first.forward_chain == 1
    assert second.forward_chain == 2
    assert second.forwarded_from["original_message_id"] == original.id
    assert second.content == "pass it on"
    with pytest.raises(ForwardDepthExceeded):
        message_log.forward_message(second.id, alice.id, other.id, db_session)


def test_pinning_requires_permission(db_session, team) -> None:
    chat, alice, bob, _ = team
    message = send(db_session, chat, bob, "important")

    with pytest.raises(MissingPermission):
        message_log.pin_message(message.id, bob.id, db_session)

    pinned = message_log.pin_message(message.id, alice.id, db_session, reason="read me")
    assert pinned.is_pinned is True
    assert [item.id for item in message_log.list_pinned_messages(chat.id, bob.id, db_session)] == [message.id]

    message_log.unpin_message(message.id, alice.id, db_session)
    assert message_log.list_pinned_messages(chat.id, bob.id, db_session) == []


def test_history_pages_backwards_by_sequence(db_session, team) -> None:
    chat, alice, _, _ = team
    messages = [send(db_session, chat, alice, f"m{index}") for index in range(5)]

    latest = message_log.list_messages(chat.id, alice.id, db_session, limit=2)
    assert [item.content for item in latest] == ["m3", "m4"]

    older = message_log.list_messages(chat.id, alice.id, db_session, before_sequence=latest[0].sequence, limit=2)
    assert [item.content for item in older] == ["m1", "m2"]
    assert messages[0].sequence == 1


def test_delivery_acknowledgement_advances_once(db_session, team) -> None:
    chat, alice, bob, _ = team
    message = send(db_session, chat, alice, "ping")

    changed = message_log.acknowledge_delivery(chat.id, bob.id, [message.id], db_session)
    assert [item.id for item in changed] == [message.id]
    assert changed[0].delivery_status == DeliveryStatus.DELIVERED

    assert message_log.acknowledge_delivery(chat.id, bob.id, [message.id], db_session) == []
    assert message_log.acknowledge_delivery(chat.id, alice.id, [message.id], db_session) == []


def test_search_covers_only_visible_messages_in_active_chats(db_session, team, make_user) -> None:
    chat, alice, bob, carol = team
    dave = make_user("dave")
    elsewhere, _ = conversations.create_chat(dave.id, ChatType.DIRECT, [bob.id], db_session)
    message_log.send_message(elsewhere.id, dave.id, MessageDraft(content="lunch for two"), db_session)

    first = send(db_session, chat, alice, "Lunch at noon?")
    second = send(db_session, chat, bob, "no lunch for me")
    hidden = send(db_session, chat, bob, "lunch is overrated")
    retracted = send(db_session, chat, alice, "lunch cancelled")
    send(db_session, chat, carol, "dinner then")
    message_log.delete_message(hidden.id, bob.id, DeleteScope.SENDER, db_session)
    message_log.delete_message(retracted.id, alice.id, DeleteScope.EVERYONE, db_session)

    found = message_log.search_messages(alice.id, "LUNCH", db_session)
    assert [item.id for item in found] == [hidden.id, second.id, first.id]

    own_view = message_log.search_messages(bob.id, "lunch", db_session, chat_id=chat.id)
    assert [item.id for item in own_view] == [second.id, first.id]

    assert len(message_log.search_messages(alice.id, "lunch", db_session, limit=1)) == 1

    with pytest.raises(NotParticipant):
        message_log.search_messages(alice.id, "lunch", db_session, chat_id=elsewhere.id)
    with pytest.raises(ValidationFailed):
        message_log.search_messages(alice.id, "   ", db_session)

    conversations.remove_participant(chat.id, carol.id, carol.id, db_session)
    assert message_log.search_messages(carol.id, "lunch", db_session) == []


def test_search_treats_wildcards_literally(db_session, team) -> None:
    chat, alice, _, _ = team
    literal = send(db_session, chat, alice, "100% done")
    send(db_session, chat, alice, "all done")
    send(db_session, chat, alice, "snake_case")

    assert [item.id for item in message_log.search_messages(alice.id, "%", db_session)] == [literal.id]
    assert [item.content for item in message_log.search_messages(alice.id, "_", db_session)] == ["snake_case"]
