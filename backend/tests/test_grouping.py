from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.models.enums import DeleteScope
from app.services.grouping import GroupAnchor, anchor_from, group_messages


@dataclass
class FakeMessage:
    label: str
    sender_id: int
    created_at: datetime
    sequence: int
    deleted_for: DeleteScope = DeleteScope.NONE


T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def build(*rows: tuple[str, int, int]) -> list[FakeMessage]:
    return [
        FakeMessage(label=label, sender_id=sender, created_at=T0 + timedelta(seconds=offset), sequence=index + 1)
        for index, (label, sender, offset) in enumerate(rows)
    ]


def labels(groups) -> list[list[str]]:
    return [[message.label for message in group.messages] for group in groups]


def test_groups_split_on_gap_and_sender_change() -> None:
    messages = build(("A", 1, 0), ("B", 1, 60), ("C", 1, 400), ("D", 2, 401))

    groups = group_messages(messages, window=timedelta(minutes=5))

    assert labels(groups) == [["A", "B"], ["C"], ["D"]]
    assert [group.sender_id for group in groups] == [1, 1, 2]
    assert groups[0].started_at == T0
    assert groups[0].ended_at == T0 + timedelta(seconds=60)


def test_gap_exactly_at_window_stays_in_group() -> None:
    messages = build(("A", 1, 0), ("B", 1, 300))

    assert labels(group_messages(messages, window=timedelta(seconds=300))) == [["A", "B"]]


def test_anchor_continues_group_across_pages() -> None:
    page_one = build(("A", 1, 0), ("B", 1, 30))
    page_two = [
        FakeMessage(label="C", sender_id=1, created_at=T0 + timedelta(seconds=90), sequence=3),
        FakeMessage(label="D", sender_id=2, created_at=T0 + timedelta(seconds=95), sequence=4),
    ]

    groups = group_messages(page_two, anchor=anchor_from(page_one[-1]))

    assert labels(groups) == [["C"], ["D"]]
    assert groups[0].continues_previous is True
    assert groups[1].continues_previous is False

    stale = GroupAnchor(sender_id=1, created_at=T0 - timedelta(hours=1))
    assert group_messages(page_two, anchor=stale)[0].continues_previous is False


def test_group_unread_counts_ignore_viewer_messages() -> None:
    messages = build(("A", 1, 0), ("B", 1, 10), ("C", 2, 20), ("D", 1, 30))

    groups = group_messages(messages, viewer_id=2, read_sequence=1)

    assert [group.unread_count for group in groups] == [1, 0, 1]


def test_empty_input_produces_no_groups() -> None:
    assert group_messages([]) == []


def test_messages_deleted_for_everyone_are_not_unread() -> None:
    messages = build(("A", 1, 0), ("B", 1, 10), ("C", 1, 20))
    messages[1].deleted_for = DeleteScope.EVERYONE
    messages[2].deleted_for = DeleteScope.SENDER

    groups = group_messages(messages, viewer_id=2, read_sequence=0)

    assert [group.unread_count for group in groups] == [2]
