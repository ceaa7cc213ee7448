from __future__ import annotations

import time

from filevault.common.audit import audit
from filevault.common.rate_limit import LoginRateLimiter
from filevault.extensions import db
from filevault.models import AuditLog, Folder, User, UserSettings


def test_login_and_me(client):
    login = client.post("/auth/login", json={"username": "alice", "password": "alicepass"})
    assert login.status_code == 200

    payload = login.get_json()
    assert payload["user"]["username"] == "alice"
    assert payload["refresh_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {payload['access_token']}"})
    assert me.status_code == 200
    assert me.get_json()["user"]["role"] == "employee"


def test_login_rejects_wrong_password(client, app):
    response = client.post("/auth/login", json={"username": "alice", "password": "nope-nope"})
    assert response.status_code == 401
    assert response.get_json()["error"]["code"] == "INVALID_CREDENTIALS"

    with app.app_context():
        assert AuditLog.query.filter_by(action="login_failed").count() == 1


def test_requests_without_token_are_rejected(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/fs").status_code == 401


def test_refresh_issues_new_access_token(client):
    tokens = client.post("/auth/login", json={"username": "bob", "password": "bobpass123"}).get_json()

    refreshed = client.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert refreshed.status_code == 200

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {refreshed.get_json()['access_token']}"})
    assert me.get_json()["user"]["username"] == "bob"


def test_login_rate_limit(client):
    for _ in range(5):
        failed = client.post("/auth/login", json={"username": "bob", "password": "wrong-password"})
        assert failed.status_code == 401

    blocked = client.post("/auth/login", json={"username": "bob", "password": "bobpass123"})
    assert blocked.status_code == 429
    assert blocked.get_json()["error"]["code"] == "RATE_LIMITED"

    # Other accounts from the same address are unaffected.
    assert client.post("/auth/login", json={"username": "alice", "password": "alicepass"}).status_code == 200


def test_rate_limiter_forgets_quiet_keys(monkeypatch):
    limiter = LoginRateLimiter()
    assert limiter.is_blocked("10.0.0.1:nobody", 60, 5) is False
    assert len(limiter) == 0

    limiter.add_failure("10.0.0.1:alice")
    assert len(limiter) == 1
    assert limiter.is_blocked("10.0.0.1:alice", 60, 1) is True

    later = time.time() + 120
    monkeypatch.setattr("filevault.common.rate_limit.time.time", lambda: later)
    assert limiter.is_blocked("10.0.0.1:alice", 60, 1) is False
    assert len(limiter) == 0


def test_change_password(client, login):
    headers = login()

    wrong = client.patch(
        "/auth/password",
        json={"current_password": "not-it", "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert wrong.status_code == 400

    short = client.patch("/auth/password", json={"current_password": "alicepass", "new_password": "short"}, headers=headers)
    assert short.status_code == 400

    changed = client.patch(
        "/auth/password",
        json={"current_password": "alicepass", "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert changed.status_code == 200
    assert client.post("/auth/login", json={"username": "alice", "password": "alicepass"}).status_code == 401
    assert client.post("/auth/login", json={"username": "alice", "password": "brand-new-pass"}).status_code == 200


def test_settings_default_then_persist(client, app, login):
    headers = login()

    initial = client.get("/auth/settings", headers=headers)
    assert initial.status_code == 200
    body = initial.get_json()
    assert body["settings"] == {"theme": "light", "notifications_enabled": True, "language": "en"}
    assert body["updated_at"]

    updated = client.patch(
        "/auth/settings",
        json={"theme": "dark", "notifications_enabled": False, "language": "de"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.get_json()["settings"] == {"theme": "dark", "notifications_enabled": False, "language": "de"}

    # Unknown values fall back to defaults; omitted keys keep their stored value.
    cleaned = client.patch("/auth/settings", json={"theme": "neon", "language": "not a language"}, headers=headers)
    assert cleaned.get_json()["settings"] == {"theme": "light", "notifications_enabled": False, "language": "en"}

    client.patch("/auth/settings", json={"theme": "dark"}, headers=headers)
    assert client.get("/auth/settings", headers=headers).get_json()["settings"]["theme"] == "dark"

    # Settings are per user.
    bob = login("bob", "bobpass123")
    assert client.get("/auth/settings", headers=bob).get_json()["settings"]["theme"] == "light"

    with app.app_context():
        assert UserSettings.query.count() == 2


def test_settings_reject_non_object_payload(client, login):
    headers = login()
    response = client.patch("/auth/settings", json=["dark"], headers=headers)
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_PARAMETER"
    assert client.patch("/auth/settings", json={"theme": "dark"}).status_code == 401

def test_user_administration_is_admin_only(client, app, login):
    alice = login()
    root = login("root", "rootpass123")

    assert client.get("/users", headers=alice).status_code == 403
    assert client.post("/users", json={"username": "carol", "password": "carolpass"}, headers=alice).status_code == 403

    listed = client.get("/users", headers=root)
    assert listed.status_code == 200
    assert {"root", "alice", "bob"} <= {item["username"] for item in listed.get_json()["users"]}

    created = client.post("/users", json={"username": "carol", "password": "carolpass", "role": "admin"}, headers=root)
    assert created.status_code == 201
    assert created.get_json()["user"]["role"] == "admin"

    duplicate = client.post("/users", json={"username": "Carol", "password": "carolpass"}, headers=root)
    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"]["code"] == "USER_EXISTS"

    assert client.post("/users", json={"username": "ab", "password": "carolpass"}, headers=root).status_code == 400

    carol = login("carol", "carolpass")
    escalate = client.post(
        "/users",
        json={"username": "dave", "password": "davepass1", "role": "superadmin"},
        headers=carol,
    )
    assert escalate.status_code == 403

    with app.app_context():
        assert User.query.filter_by(username="dave").count() == 0


def test_user_search_excludes_self(client, login):
    alice = login()

    found = client.get("/users/search?q=b", headers=alice).get_json()["users"]
    assert [item["username"] for item in found] == ["bob"]
    assert set(found[0]) == {"id", "username"}

    assert client.get("/users/search?q=alice", headers=alice).get_json()["users"] == []
    assert client.get("/users/search", headers=alice).get_json()["users"] == []

    available = [item["username"] for item in client.get("/users/available", headers=alice).get_json()["users"]]
    assert "alice" not in available
    assert {"bob", "root"} <= set(available)


def test_audit_logs_are_admin_only(client, login):
    alice = login()
    root = login("root", "rootpass123")
    client.post("/fs/folder", json={"name": "audited"}, headers=alice)

    assert client.get("/audit/logs", headers=alice).status_code == 403

    logs = client.get("/audit/logs?action=create_folder", headers=root)
    assert logs.status_code == 200
    entries = logs.get_json()["logs"]
    assert len(entries) == 1
    assert entries[0]["action"] == "create_folder"

    limited = client.get("/audit/logs?limit=1", headers=root).get_json()["logs"]
    assert len(limited) == 1
    assert limited[0]["action"] == "create_folder"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_failed_audit_insert_keeps_primary_change(app):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        db.session.add(Folder(name="kept", owner_id=alice.id))

        # target_type is required, so this audit row cannot be inserted.
        audit("unrecordable_event", actor=alice, target_type=None)
        db.session.commit()

        assert Folder.query.filter_by(name="kept").count() == 1
        assert AuditLog.query.filter_by(action="unrecordable_event").count() == 0
