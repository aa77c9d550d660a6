from __future__ import annotations

import pytest

from app.models import ChatPermission, ChatType, ParticipantRole
from app.services import conversations
from app.services.errors import (
    InvalidParticipantCount,
    MissingPermission,
    NameRequired,
    NotParticipant,
    PermissionDenied,
    UnknownUser,
    ValidationFailed,
)


def test_direct_chat_is_idempotent_per_pair(db_session, make_user) -> None:
    """Asking twice for a direct chat between the same users returns the first one."""

    alice = make_user("alice")
    bob = make_user("bob")

    chat, created = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)
    again, created_again = conversations.create_chat(bob.id, ChatType.DIRECT, [alice.id], db_session)

    assert created is True
    assert created_again is False
    assert again.id == chat.id
    roles = {participant.user_id: participant.role for participant in chat.participants}
    assert roles == {alice.id: ParticipantRole.OWNER, bob.id: ParticipantRole.MEMBER}


def test_direct_chat_requires_exactly_one_other_user(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")

    with pytest.raises(InvalidParticipantCount):
        conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id, carol.id], db_session)
    with pytest.raises(InvalidParticipantCount):
        conversations.create_chat(alice.id, ChatType.DIRECT, [alice.id], db_session)


def test_group_chat_requires_name_and_known_users(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")

    with pytest.raises(NameRequired):
        conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="   ")
    with pytest.raises(UnknownUser):
        conversations.create_chat(alice.id, ChatType.GROUP, [bob.id, 999], db_session, name="Team")

    chat, created = conversations.create_chat(
        alice.id, ChatType.GROUP, [bob.id], db_session, name="  Team  "
    )
    assert created is True
    assert chat.name == "Team"
    assert len(chat.active_participants) == 2


def test_member_defaults_do_not_include_management(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")

    member = conversations.require_participant(chat.id, bob.id, db_session)
    assert member.has_permission(ChatPermission.SEND_MESSAGES)
    assert member.has_permission(ChatPermission.REACT_TO_MESSAGES)
    assert not member.has_permission(ChatPermission.ADD_PARTICIPANTS)
    assert not member.has_permission(ChatPermission.PIN_MESSAGES)

    owner = conversations.require_participant(chat.id, alice.id, db_session)
    assert owner.permissions == set(ChatPermission)


def test_add_and_remove_participant_keeps_record(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    chat, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")

    with pytest.raises(MissingPermission):
        conversations.add_participant(chat.id, bob.id, carol.id, db_session)

    added = conversations.add_participant(chat.id, alice.id, carol.id, db_session)
    assert added.is_active is True

    removed = conversations.remove_participant(chat.id, alice.id, carol.id, db_session)
    assert removed.is_active is False
    assert removed.left_at is not None
    assert conversations.get_participant(chat.id, carol.id, db_session) is not None

    with pytest.raises(NotParticipant):
        conversations.require_participant(chat.id, carol.id, db_session)

    readded = conversations.add_participant(chat.id, alice.id, carol.id, db_session)
    assert readded.id == added.id
    assert readded.is_active is True
    assert readded.left_at is None


def test_owner_cannot_be_removed_by_others(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")
    conversations.update_participant(chat.id, alice.id, bob.id, db_session, role=ParticipantRole.ADMIN)

    with pytest.raises(PermissionDenied):
        conversations.remove_participant(chat.id, bob.id, alice.id, db_session)


def test_leaving_and_recreating_direct_chat_reactivates(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)

    conversations.remove_participant(chat.id, bob.id, bob.id, db_session)
    with pytest.raises(InvalidParticipantCount):
        conversations.add_participant(chat.id, alice.id, bob.id, db_session)

    again, created = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)
    assert created is False
    assert again.id == chat.id
    assert conversations.require_participant(chat.id, bob.id, db_session).is_active


def test_update_settings_validates_and_merges(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")

    updated = conversations.update_settings(
        chat.id, alice.id, {"allow_reactions": False, "allowed_file_types": [".PDF", "png"]}, db_session
    )
    assert updated.settings.allow_reactions is False
    assert updated.settings.allow_threads is True
    assert updated.settings.allowed_file_types == ["pdf", "png"]

    with pytest.raises(ValidationFailed):
        conversations.update_settings(chat.id, alice.id, {"unknown_flag": True}, db_session)
    with pytest.raises(ValidationFailed):
        conversations.update_settings(chat.id, alice.id, {"max_file_size_mb": 0}, db_session)
    with pytest.raises(MissingPermission):
        conversations.update_settings(chat.id, bob.id, {"allow_threads": False}, db_session)


def test_archived_chats_are_hidden_from_listing_by_default(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    team, _ = conversations.create_chat(alice.id, ChatType.GROUP, [bob.id], db_session, name="Team")
    direct, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [carol.id], db_session)

    conversations.set_archived(team.id, alice.id, True, db_session)

    visible = [chat.id for chat in conversations.list_user_chats(alice.id, db_session)]
    assert visible == [direct.id]
    everything = conversations.list_user_chats(alice.id, db_session, include_archived=True)
    assert {chat.id for chat in everything} == {team.id, direct.id}

    conversations.set_archived(team.id, alice.id, False, db_session)
    conversations.set_pinned(team.id, alice.id, True, db_session)
    ordered = [chat.id for chat in conversations.list_user_chats(alice.id, db_session)]
    assert ordered[0] == team.id


def test_mute_is_scoped_to_the_caller(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)

    muted = conversations.mute_chat(chat.id, bob.id, db_session)
    assert muted.is_muted is True
    assert conversations.require_participant(chat.id, alice.id, db_session).is_muted is False

    unmuted = conversations.unmute_chat(chat.id, bob.id, db_session)
    assert unmuted.is_muted is False


def test_direct_chats_have_no_name(db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)

    with pytest.raises(ValidationFailed):
        conversations.update_chat_info(chat.id, alice.id, db_session, name="Renamed")
