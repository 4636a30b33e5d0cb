def befriend(client, a, b) -> None:
    r = client.post("/api/friends/request", json={"receiver_id": b.id}, headers=a.headers)
    assert r.status_code == 201, r.text
    r = client.post(f"/api/friends/request/{r.json()['id']}/accept", headers=b.headers)
    assert r.status_code == 200, r.text


def create_bill(client, creator, shares, total=None, **extra):
    body = {
        "title": extra.pop("title", "Dinner"),
        "total_amount": total if total is not None else sum(a for _, a in shares),
        "participants": [{"user_id": u.id, "amount": a} for u, a in shares],
        **extra,
    }
    return client.post("/api/bills", json=body, headers=creator.headers)


def notifications_of(client, user, **params):
    r = client.get("/api/notifications", params=params, headers=user.headers)
    assert r.status_code == 200, r.text
    return r.json()["notifications"]
