from helpers import create_bill, notifications_of


def test_create_bill_requires_matching_split(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    r = create_bill(client, alice, [(alice, 60), (bob, 39)], total=100)
    assert r.status_code == 400
    assert r.json()["error"] == "validation_failure"
    assert client.get("/api/bills", headers=alice.headers).json() == []


def test_create_bill_builds_conversation_and_notifies_participants(client, make_user):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    r = create_bill(client, alice, [(alice, 20), (bob, 40), (carol, 40)], title="Groceries")
    assert r.status_code == 201
    bill = r.json()
    assert bill["status"] == "PENDING"
    assert bill["currency"] == "NGN"
    assert bill["creator"]["username"] == "alice"

    conv = client.get(f"/api/conversations/{bill['conversation_id']}", headers=bob.headers).json()
    assert conv["name"] == "Bill: Groceries"
    assert set(conv["participant_ids"]) == {alice.id, bob.id, carol.id}

    notes = notifications_of(client, bob)
    assert [n["type"] for n in notes] == ["BILL_CREATED"]
    assert notes[0]["metadata"] == {"billId": bill["id"]}
    assert notifications_of(client, alice) == []


def test_unknown_participant_rolls_back_everything(client, make_user):
    alice = make_user("alice")
    body = {"title": "x", "total_amount": 10, "participants": [{"user_id": "nobody", "amount": 10}]}
    r = client.post("/api/bills", json=body, headers=alice.headers)
    assert r.status_code == 404
    assert client.get("/api/conversations", headers=alice.headers).json() == []


def test_pay_bill_end_to_end(client, make_user):
    creator, u1, u2 = make_user("creator"), make_user("user1"), make_user("user2")
    bill_id = create_bill(client, creator, [(u1, 60), (u2, 40)], total=100).json()["id"]

    r = client.post(f"/api/bills/{bill_id}/pay", json={"amount": 60}, headers=u1.headers)
    assert r.status_code == 200
    assert r.json()["is_paid"] is True
    assert r.json()["bill_status"] == "PARTIALLY_PAID"

    r = client.post(f"/api/bills/{bill_id}/pay", headers=u2.headers)
    assert r.status_code == 200
    assert r.json()["paid_amount"] == 40.0
    assert r.json()["bill_status"] == "PAID"

    bill = client.get(f"/api/bills/{bill_id}", headers=creator.headers).json()
    assert bill["status"] == "PAID"
    assert bill["paid_at"] is not None
    assert all(p["is_paid"] and p["paid_at"] for p in bill["participants"])
    assert [n["type"] for n in notifications_of(client, creator)] == ["BILL_PAYMENT", "BILL_PAYMENT"]


def test_paying_twice_conflicts_and_keeps_amount(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    bill_id = create_bill(client, alice, [(bob, 30)]).json()["id"]
    assert client.post(f"/api/bills/{bill_id}/pay", headers=bob.headers).status_code == 200

    r = client.post(f"/api/bills/{bill_id}/pay", json={"amount": 5}, headers=bob.headers)
    assert r.status_code == 409
    assert r.json()["error"] == "already_paid"
    bill = client.get(f"/api/bills/{bill_id}", headers=bob.headers).json()
    assert bill["participants"][0]["paid_amount"] == 30.0


def test_paying_twice_without_amount_reports_already_paid(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    bill_id = create_bill(client, alice, [(bob, 30)]).json()["id"]
    assert client.post(f"/api/bills/{bill_id}/pay", headers=bob.headers).status_code == 200

    r = client.post(f"/api/bills/{bill_id}/pay", headers=bob.headers)
    assert r.status_code == 409
    assert r.json()["error"] == "already_paid"


def test_zero_share_starts_paid_and_bill_can_settle(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    r = create_bill(client, alice, [(alice, 0), (bob, 10)])
    assert r.status_code == 201
    bill = r.json()
    shares = {p["user_id"]: p for p in bill["participants"]}
    assert shares[alice.id]["is_paid"] is True
    assert shares[alice.id]["paid_at"] is not None
    assert shares[bob.id]["is_paid"] is False
    assert bill["status"] == "PARTIALLY_PAID"

    r = client.post(f"/api/bills/{bill['id']}/pay", headers=bob.headers)
    assert r.json()["bill_status"] == "PAID"


def test_partial_payment_keeps_participant_unpaid(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    bill_id = create_bill(client, alice, [(alice, 50), (bob, 50)]).json()["id"]
    r = client.post(f"/api/bills/{bill_id}/pay", json={"amount": 20}, headers=bob.headers)
    assert r.json()["is_paid"] is False
    assert r.json()["bill_status"] == "PENDING"
    r = client.post(f"/api/bills/{bill_id}/pay", json={"amount": 30}, headers=bob.headers)
    assert r.json()["is_paid"] is True
    assert r.json()["bill_status"] == "PARTIALLY_PAID"


def test_non_participant_cannot_pay_or_view(client, make_user):
    alice, bob, mallory = make_user("alice"), make_user("bob"), make_user("mallory")
    bill_id = create_bill(client, alice, [(bob, 10)]).json()["id"]
    assert client.post(f"/api/bills/{bill_id}/pay", headers=mallory.headers).status_code == 404
    assert client.get(f"/api/bills/{bill_id}", headers=mallory.headers).status_code == 403
    assert client.get("/api/bills/missing", headers=alice.headers).status_code == 404


def test_status_changes_follow_state_machine(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    bill_id = create_bill(client, alice, [(bob, 10)]).json()["id"]
    url = f"/api/bills/{bill_id}/status"

    assert client.put(url, json={"status": "CANCELLED"}, headers=bob.headers).status_code == 403
    assert client.put(url, json={"status": "PAID"}, headers=alice.headers).status_code == 400
    assert client.put(url, json={"status": "OVERDUE"}, headers=alice.headers).json()["status"] == "OVERDUE"
    assert client.put(url, json={"status": "CANCELLED"}, headers=alice.headers).json()["status"] == "CANCELLED"

    r = client.put(url, json={"status": "OVERDUE"}, headers=alice.headers)
    assert r.status_code == 409
    r = client.post(f"/api/bills/{bill_id}/pay", headers=bob.headers)
    assert r.status_code == 409
    assert client.get(f"/api/bills/{bill_id}", headers=bob.headers).json()["status"] == "CANCELLED"


def test_list_filters_and_summary(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    owed_to_alice = create_bill(client, alice, [(alice, 10), (bob, 40)]).json()["id"]
    create_bill(client, bob, [(alice, 25)])
    cancelled = create_bill(client, alice, [(bob, 99)]).json()["id"]
    client.put(f"/api/bills/{cancelled}/status", json={"status": "CANCELLED"}, headers=alice.headers)

    owed = client.get("/api/bills", params={"type": "owed"}, headers=alice.headers).json()
    assert len(owed) == 2
    owing = client.get("/api/bills", params={"type": "owing"}, headers=alice.headers).json()
    assert {b["id"] for b in owing} == {owed_to_alice, cancelled}
    pending = client.get("/api/bills", params={"status": "CANCELLED"}, headers=alice.headers).json()
    assert [b["id"] for b in pending] == [cancelled]

    summary = client.get("/api/bills/summary", headers=alice.headers).json()
    assert summary["total_owed"] == 35.0
    assert summary["total_owing"] == 40.0
    assert summary["net_balance"] == 5.0


def test_delete_bill_creator_only(client, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    bill_id = create_bill(client, alice, [(bob, 10)]).json()["id"]
    assert client.delete(f"/api/bills/{bill_id}", headers=bob.headers).status_code == 403
    assert client.delete(f"/api/bills/{bill_id}", headers=alice.headers).status_code == 200
    assert client.get(f"/api/bills/{bill_id}", headers=alice.headers).status_code == 404
