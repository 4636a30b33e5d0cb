def test_register_login_me_logout(client, make_user):
    alice = make_user("alice")

    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret123"})
    assert r.status_code == 200
    token = r.json()["token"]
    assert token != alice.token
    headers = {"Authorization": f"Bearer {token}"}

    me = client.get("/api/auth/me", headers=headers).json()
    assert me["id"] == alice.id
    assert me["email"] == "alice@example.com"
    assert "password_hash" not in me

    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    r = client.get("/api/auth/me", headers=headers)
    assert r.status_code == 401
    assert r.json()["error"] == "authentication_failure"
    # session cũ vẫn còn hiệu lực
    assert client.get("/api/auth/me", headers=alice.headers).status_code == 200


def test_duplicate_registration_conflicts(client, make_user):
    make_user("alice")
    r = client.post(
        "/api/auth/register",
        json={"email": "alice@example.com", "username": "other", "full_name": "X", "password": "secret123"},
    )
    assert r.status_code == 409
    assert r.json() == {"detail": "Email or username already taken", "error": "conflict"}


def test_login_with_wrong_password(client, make_user):
    make_user("alice")
    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert r.status_code == 401
    r = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "nope"})
    assert r.status_code == 401


def test_missing_or_malformed_token(client):
    assert client.get("/api/auth/me").json()["detail"] == "No token provided"
    r = client.get("/api/auth/me", headers={"Authorization": "Token abc"})
    assert r.status_code == 401


def test_update_profile(client, make_user):
    alice = make_user("alice")
    r = client.put("/api/auth/profile", json={"bio": "hi", "phone_number": "0800"}, headers=alice.headers)
    assert r.status_code == 200
    assert r.json()["bio"] == "hi"
    assert r.json()["full_name"] == "Alice"


def test_health(client):
    assert client.get("/health").json() == {
        "status": "healthy",
        "service": "bills-ledger",
        "database": "ok",
        "redis": "ok",
    }
