import pytest
from pymongo.errors import PyMongoError

from conftest import auth
from notifications import NotificationError, dispatch_quietly


def test_registration_fills_inbox(client, register):
    _, token = register("patient")

    response = client.get("/api/notifications", headers=auth(token))

    assert response.status_code == 200
    body = response.json()
    categories = {n["category"] for n in body["data"]}
    assert categories == {"email-verification", "registration-welcome"}
    assert body["unreadCount"] == 2
    assert all(n["sent"] for n in body["data"])


def test_failed_delivery_still_stored_unsent(client, register, notifier):
    notifier.fail = True
    _, token = register("patient")

    data = client.get("/api/notifications", headers=auth(token)).json()["data"]
    assert len(data) == 2
    assert not any(n["sent"] for n in data)


def test_mark_read_and_read_all(client, register):
    _, token = register("patient")
    headers = auth(token)
    first = client.get("/api/notifications", headers=headers).json()["data"][0]

    assert client.put(f"/api/notifications/{first['id']}/read", headers=headers).status_code == 200
    assert client.get("/api/notifications/unread-count", headers=headers).json()["data"]["count"] == 1
    unread = client.get("/api/notifications", params={"isRead": "false"}, headers=headers).json()
    assert unread["pagination"]["total"] == 1

    done = client.put("/api/notifications/read-all", headers=headers)
    assert done.json()["data"]["updated"] == 1
    assert client.get("/api/notifications/unread-count", headers=headers).json()["data"]["count"] == 0


def test_cannot_touch_another_users_notification(client, register):
    _, alice_token = register("patient")
    _, bob_token = register("patient", email="bob@x.com", firstName="Bob")
    alices = client.get("/api/notifications", headers=auth(alice_token)).json()["data"][0]

    response = client.put(f"/api/notifications/{alices['id']}/read", headers=auth(bob_token))

    assert response.status_code == 404
    assert client.put("/api/notifications/not-an-id/read", headers=auth(bob_token)).status_code == 404


def test_dispatch_quietly_reports_failure():
    def boom(*_):
        raise NotificationError("down")

    sent = []
    assert dispatch_quietly(boom, "x", event="test") is False
    assert dispatch_quietly(sent.append, "x", event="test") is True
    assert sent == ["x"]


def test_inbox_never_stores_one_time_tokens(client, register, notifier, db):
    _, token = register("patient")
    client.post("/api/auth/forgot-password", json={"email": "alice@x.com"})
    one_time = [notifier.last_token("Verify your email"), notifier.last_token("Password reset")]

    stored = list(db.notifications.find())
    assert {n["category"] for n in stored} >= {"email-verification", "password-reset"}
    for doc in stored:
        for secret in one_time:
            assert secret not in doc["message"]
            assert secret not in doc["subject"]

    inbox = client.get("/api/notifications", headers=auth(token)).json()["data"]
    assert not any("token=" in n["message"] for n in inbox)


def test_storage_failure_raises_notification_error(notifier, monkeypatch):
    def broken(*_args, **_kwargs):
        raise PyMongoError("notifications write failed")

    monkeypatch.setattr(notifier, "_store", broken)

    with pytest.raises(NotificationError):
        notifier.send_welcome({"_id": "u1", "first_name": "Alice", "role": "patient", "email": "alice@x.com"})
    assert notifier.emails == []
