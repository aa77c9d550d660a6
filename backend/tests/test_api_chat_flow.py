from __future__ import annotations

import pytest


@pytest.fixture()
def people(make_user):
    return make_user("alice"), make_user("bob"), make_user("carol")


def open_direct(client, auth_headers, creator, other):
    response = client.post(
        "/api/chats",
        json={"chat_type": "direct", "participant_ids": [other.id]},
        headers=auth_headers(creator),
    )
    assert response.status_code in (200, 201)
    return response


def test_requests_without_token_are_rejected(client) -> None:
    assert client.get("/api/chats").status_code == 401


def test_health_and_metrics_endpoints(client) -> None:
    assert client.get("/health").json()["status"] == "ok"

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "# TYPE chat_messages_total counter" in response.text


def test_direct_chat_endpoint_is_idempotent(client, auth_headers, people) -> None:
    alice, bob, _ = people

    first = open_direct(client, auth_headers, alice, bob)
    second = open_direct(client, auth_headers, bob, alice)

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert {item["user_id"] for item in first.json()["participants"]} == {alice.id, bob.id}


def test_message_lifecycle_over_http(client, auth_headers, people) -> None:
    alice, bob, _ = people
    chat_id = open_direct(client, auth_headers, alice, bob).json()["id"]

    sent = client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "hello", "client_token": "tok-1"},
        headers=auth_headers(alice),
    )
    assert sent.status_code == 201
    message = sent.json()
    assert message["sequence"] == 1
    assert message["delivery_status"] == "sent"
    assert message["sender"]["login"] == "alice"

    again = client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "hello", "client_token": "tok-1"},
        headers=auth_headers(alice),
    )
    assert again.json()["id"] == message["id"]

    summary = client.get("/api/chats", headers=auth_headers(bob)).json()
    assert summary[0]["unread_count"] == 1

    delivered = client.post(
        f"/api/chats/{chat_id}/delivered",
        json={"message_ids": [message["id"]]},
        headers=auth_headers(bob),
    )
    assert delivered.json() == [message["id"]]

    read = client.post(
        f"/api/chats/{chat_id}/read",
        json={"last_message_id": message["id"]},
        headers=auth_headers(bob),
    )
    assert read.status_code == 200
    assert read.json()["unread_count"] == 0
    assert read.json()["last_read_sequence"] == 1

    history = client.get(f"/api/chats/{chat_id}/messages", headers=auth_headers(alice)).json()
    assert [item["delivery_status"] for item in history] == ["read"]

    edited = client.patch(
        f"/api/messages/{message['id']}",
        json={"content": "hello there"},
        headers=auth_headers(alice),
    )
    assert edited.json()["is_edited"] is True
    assert edited.json()["sequence"] == 1

    deleted = client.delete(f"/api/messages/{message['id']}", headers=auth_headers(alice))
    assert deleted.json()["deleted_for"] == "everyone"
    assert deleted.json()["content"] == ""


def test_typed_errors_carry_kind_and_status(client, auth_headers, people) -> None:
    alice, bob, carol = people
    chat_id = open_direct(client, auth_headers, alice, bob).json()["id"]

    outsider = client.post(
        f"/api/chats/{chat_id}/messages", json={"content": "hi"}, headers=auth_headers(carol)
    )
    assert outsider.status_code == 403
    assert outsider.json()["detail"]["kind"] == "not_participant"

    empty = client.post(
        f"/api/chats/{chat_id}/messages", json={"content": "  "}, headers=auth_headers(alice)
    )
    assert empty.status_code == 400
    assert empty.json()["detail"]["kind"] == "empty_message"

    missing = client.get("/api/chats/999", headers=auth_headers(alice))
    assert missing.status_code == 403

    unknown_message = client.post(
        f"/api/chats/{chat_id}/read", json={"last_message_id": 999}, headers=auth_headers(alice)
    )
    assert unknown_message.status_code == 404
    assert unknown_message.json()["detail"]["kind"] == "message_not_found"


def test_group_management_reactions_and_threads(client, auth_headers, people) -> None:
    alice, bob, carol = people
    created = client.post(
        "/api/chats",
        json={"chat_type": "group", "participant_ids": [bob.id], "name": "Team"},
        headers=auth_headers(alice),
    )
    assert created.status_code == 201
    chat_id = created.json()["id"]

    forbidden = client.post(
        f"/api/chats/{chat_id}/participants", json={"user_id": carol.id}, headers=auth_headers(bob)
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["kind"] == "missing_permission"

    added = client.post(
        f"/api/chats/{chat_id}/participants", json={"user_id": carol.id}, headers=auth_headers(alice)
    )
    assert added.status_code == 201
    assert added.json()["role"] == "member"

    root = client.post(
        f"/api/chats/{chat_id}/messages", json={"content": "topic"}, headers=auth_headers(alice)
    ).json()

    reacted = client.post(
        f"/api/messages/{root['id']}/reactions", json={"emoji": "👍"}, headers=auth_headers(bob)
    )
    assert reacted.status_code == 201
    assert reacted.json()["reactions"] == [
        {"emoji": "👍", "count": 1, "reacted": True, "user_ids": [bob.id]}
    ]
    removed = client.delete(
        f"/api/messages/{root['id']}/reactions", params={"emoji": "👍"}, headers=auth_headers(bob)
    )
    assert removed.json()["reactions"] == []

    reply = client.post(
        f"/api/messages/{root['id']}/thread", json={"content": "in thread"}, headers=auth_headers(carol)
    )
    assert reply.status_code == 201
    thread = client.get(f"/api/messages/{root['id']}/thread", headers=auth_headers(bob)).json()
    assert thread["root"]["thread_replies_count"] == 1
    assert [item["content"] for item in thread["replies"]] == ["in thread"]

    settings = client.patch(
        f"/api/chats/{chat_id}/settings", json={"allow_reactions": False}, headers=auth_headers(alice)
    )
    assert settings.json()["settings"]["allow_reactions"] is False
    disabled = client.post(
        f"/api/messages/{root['id']}/reactions", json={"emoji": "🎉"}, headers=auth_headers(bob)
    )
    assert disabled.status_code == 409
    assert disabled.json()["detail"]["kind"] == "reactions_disabled"

    left = client.delete(f"/api/chats/{chat_id}/participants/{carol.id}", headers=auth_headers(carol))
    assert left.status_code == 204
    members = client.get(f"/api/chats/{chat_id}", headers=auth_headers(alice)).json()["participants"]
    assert {item["user_id"] for item in members} == {alice.id, bob.id}


def test_grouped_history_endpoint(client, auth_headers, people) -> None:
    alice, bob, _ = people
    chat_id = open_direct(client, auth_headers, alice, bob).json()["id"]
    for author, text in [(alice, "one"), (alice, "two"), (bob, "three")]:
        client.post(f"/api/chats/{chat_id}/messages", json={"content": text}, headers=auth_headers(author))

    groups = client.get(f"/api/chats/{chat_id}/messages/grouped", headers=auth_headers(bob)).json()

    assert [[item["content"] for item in group["messages"]] for group in groups] == [["one", "two"], ["three"]]
    assert [group["unread_count"] for group in groups] == [2, 0]

    tail = client.get(
        f"/api/chats/{chat_id}/messages/grouped", params={"before": 3, "limit": 1}, headers=auth_headers(bob)
    ).json()
    assert tail[0]["continues_previous"] is True


def test_announcement_endpoints(client, auth_headers, make_user, people) -> None:
    alice, bob, _ = people
    admin = make_user("admin", org_role="admin")

    denied = client.post(
        "/api/announcements", json={"title": "Hi", "content": "All hands"}, headers=auth_headers(alice)
    )
    assert denied.status_code == 403

    created = client.post(
        "/api/announcements",
        json={"title": "Hi", "content": "All hands", "priority": "urgent"},
        headers=auth_headers(admin),
    )
    assert created.status_code == 201
    announcement = created.json()
    assert announcement["total_recipients"] == 4
    assert announcement["read_percentage"] == 0

    read = client.post(f"/api/announcements/{announcement['id']}/read", headers=auth_headers(bob))
    assert read.json()["is_read"] is True
    assert read.json()["read_percentage"] == 25

    listed = client.get("/api/announcements", headers=auth_headers(alice)).json()
    assert [item["id"] for item in listed] == [announcement["id"]]
    assert listed[0]["is_read"] is False

    withdrawn = client.delete(f"/api/announcements/{announcement['id']}", headers=auth_headers(admin))
    assert withdrawn.json()["is_active"] is False
    assert client.get("/api/announcements", headers=auth_headers(alice)).json() == []


def test_grouped_history_skips_retracted_messages_in_unread(client, auth_headers, people) -> None:
    alice, bob, _ = people
    chat_id = open_direct(client, auth_headers, alice, bob).json()["id"]
    sent = client.post(
        f"/api/chats/{chat_id}/messages", json={"content": "oops"}, headers=auth_headers(alice)
    ).json()
    client.delete(f"/api/messages/{sent['id']}", headers=auth_headers(alice))

    groups = client.get(f"/api/chats/{chat_id}/messages/grouped", headers=auth_headers(bob)).json()

    assert [group["unread_count"] for group in groups] == [0]
    assert client.get("/api/chats", headers=auth_headers(bob)).json()[0]["unread_count"] == 0


def test_poll_endpoints(client, auth_headers, people) -> None:
    alice, bob, carol = people
    chat_id = client.post(
        "/api/chats",
        json={"chat_type": "group", "participant_ids": [bob.id, carol.id], "name": "Team"},
        headers=auth_headers(alice),
    ).json()["id"]
    poll = client.post(
        f"/api/chats/{chat_id}/messages",
        json={"message_type": "poll", "payload": {"question": "Offsite?", "options": ["May", "June"]}},
        headers=auth_headers(bob),
    ).json()

    voted = client.post(
        f"/api/messages/{poll['id']}/poll/votes", json={"option_indexes": [1]}, headers=auth_headers(carol)
    )
    assert voted.status_code == 200
    assert [option["vote_count"] for option in voted.json()["options"]] == [0, 1]
    assert voted.json()["options"][1]["voter_ids"] == [carol.id]

    too_many = client.post(
        f"/api/messages/{poll['id']}/poll/votes", json={"option_indexes": [0, 1]}, headers=auth_headers(alice)
    )
    assert too_many.status_code == 400
    assert too_many.json()["detail"]["kind"] == "invalid_poll_option"

    denied = client.post(f"/api/messages/{poll['id']}/poll/close", headers=auth_headers(carol))
    assert denied.status_code == 403

    closed = client.post(f"/api/messages/{poll['id']}/poll/close", headers=auth_headers(bob))
    assert closed.json()["is_open"] is False

    late = client.post(
        f"/api/messages/{poll['id']}/poll/votes", json={"option_indexes": [0]}, headers=auth_headers(alice)
    )
    assert late.status_code == 409
    assert late.json()["detail"]["kind"] == "poll_closed"

    results = client.get(f"/api/messages/{poll['id']}/poll", headers=auth_headers(alice)).json()
    assert results["total_votes"] == 1
    assert results["options"][1]["selected"] is False


def test_message_search_endpoint(client, auth_headers, people) -> None:
    alice, bob, carol = people
    chat_id = open_direct(client, auth_headers, alice, bob).json()["id"]
    for author, text in [(alice, "quarterly report"), (bob, "Report is late"), (bob, "see you")]:
        client.post(f"/api/chats/{chat_id}/messages", json={"content": text}, headers=auth_headers(author))

    found = client.get("/api/messages/search", params={"q": "report"}, headers=auth_headers(alice))
    assert found.status_code == 200
    assert [item["content"] for item in found.json()] == ["Report is late", "quarterly report"]

    assert client.get("/api/messages/search", params={"q": "report"}, headers=auth_headers(carol)).json() == []

    scoped = client.get(
        "/api/messages/search", params={"q": "report", "chat_id": chat_id}, headers=auth_headers(carol)
    )
    assert scoped.status_code == 403
    assert client.get("/api/messages/search", headers=auth_headers(alice)).status_code == 422
