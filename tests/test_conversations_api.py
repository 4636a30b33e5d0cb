from helpers import notifications_of


def _direct(client, a, b):
    return client.post("/api/conversations/direct", json={"participant_id": b.id}, headers=a.headers)


def test_direct_conversation_is_unique_per_pair(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    first = _direct(client, alice, bob).json()
    again = _direct(client, alice, bob).json()
    reverse = _direct(client, bob, alice).json()
    assert first["id"] == again["id"] == reverse["id"]
    assert first["type"] == "DIRECT"
    assert len(client.get("/api/conversations", headers=alice.headers).json()) == 1


def test_direct_conversation_guards(client, make_user):
    alice = make_user("alice")
    assert _direct(client, alice, alice).status_code == 400
    r = client.post("/api/conversations/direct", json={"participant_id": "ghost"}, headers=alice.headers)
    assert r.status_code == 404


def test_group_needs_two_other_participants(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    r = client.post(
        "/api/conversations/group",
        json={"name": "Tiny", "participant_ids": [alice.id, bob.id]},
        headers=alice.headers,
    )
    assert r.status_code == 400


def test_rest_message_updates_conversation_and_unread_counts(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    conv_id = _direct(client, alice, bob).json()["id"]

    r = client.post(
        "/api/conversations/messages",
        json={"conversation_id": conv_id, "content": "pay me back"},
        headers=alice.headers,
    )
    assert r.status_code == 201
    msg = r.json()
    assert msg["sender"]["username"] == "alice"

    convs = client.get("/api/conversations", headers=bob.headers).json()
    assert convs[0]["last_message"] == "pay me back"
    assert convs[0]["unread_count"] == 1
    assert client.get("/api/conversations", headers=alice.headers).json()[0]["unread_count"] == 0

    notes = notifications_of(client, bob)
    assert len(notes) == 1
    assert notes[0]["metadata"] == {"conversationId": conv_id, "messageId": msg["id"]}

    page = client.get(f"/api/conversations/{conv_id}/messages", headers=bob.headers).json()
    assert [m["id"] for m in page["messages"]] == [msg["id"]]
    assert page["pagination"]["hasMore"] is False
    assert client.get("/api/conversations", headers=bob.headers).json()[0]["unread_count"] == 0


def test_outsiders_cannot_read_or_post(client, make_user):
    alice, bob, mallory = make_user("alice"), make_user("bob"), make_user("mallory")
    conv_id = _direct(client, alice, bob).json()["id"]
    assert client.get(f"/api/conversations/{conv_id}", headers=mallory.headers).status_code == 403
    assert client.get(f"/api/conversations/{conv_id}/messages", headers=mallory.headers).status_code == 403
    r = client.post(
        "/api/conversations/messages", json={"conversation_id": conv_id, "content": "hi"}, headers=mallory.headers
    )
    assert r.status_code == 403
    assert client.get("/api/conversations/missing/messages", headers=alice.headers).status_code == 404


def test_group_participants_and_leave(client, make_user):
    alice, bob, carol, dave = make_user("alice"), make_user("bob"), make_user("carol"), make_user("dave")
    conv = client.post(
        "/api/conversations/group",
        json={"name": "Flat", "participant_ids": [bob.id, carol.id]},
        headers=alice.headers,
    ).json()
    url = f"/api/conversations/{conv['id']}/participants"

    r = client.post(url, json={"user_id": dave.id}, headers=bob.headers)
    assert dave.id in r.json()["participant_ids"]
    assert client.post(url, json={"user_id": dave.id}, headers=bob.headers).status_code == 409

    direct_id = _direct(client, alice, bob).json()["id"]
    r = client.post(f"/api/conversations/{direct_id}/participants", json={"user_id": dave.id}, headers=alice.headers)
    assert r.status_code == 400

    assert client.delete(f"/api/conversations/{conv['id']}/leave", headers=carol.headers).status_code == 200
    assert client.get(f"/api/conversations/{conv['id']}", headers=carol.headers).status_code == 403
    assert client.delete(f"/api/conversations/{conv['id']}/leave", headers=carol.headers).status_code == 404
