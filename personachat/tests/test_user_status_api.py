from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from personachat.core.database import get_db_session, subscriptions, users
from personachat.features.billing.service import create_subscription
from personachat.features.users.service import get_user


def test_status_for_new_free_user(client, auth_headers):
    resp = client.get("/user/status", headers=auth_headers("u_new", email="new@example.com", name="New User"))

    assert resp.status_code == 200
    user = resp.json()["user"]
    assert user["uid"] == "u_new"
    assert user["email"] == "new@example.com"
    assert user["displayName"] == "New User"
    assert user["plan"] == "free"
    assert user["subscriptionStatus"] == "inactive"
    assert user["subscription"] is None
    assert user["features"]["basicPersonas"] is True
    assert user["limits"] == {
        "dailyMessages": 0,
        "remainingMessages": 20,
        "isLimitReached": False,
        "planLimit": 20,
        "hasUnlimitedMessages": False,
    }
    assert user["preferences"]["theme"] == "dark"
    assert user["stats"]["totalMessages"] == 0


def test_status_for_active_subscriber(client, auth_headers):
    create_subscription("u_pro", "pro-plus", 5.00, "USD", "paypal")

    resp = client.get("/user/status", headers=auth_headers("u_pro"))

    user = resp.json()["user"]
    assert user["plan"] == "pro-plus"
    assert user["subscriptionStatus"] == "active"
    assert user["features"]["customPersonas"] is True
    assert user["limits"]["remainingMessages"] == "unlimited"
    assert user["limits"]["planLimit"] == "unlimited"
    assert user["subscription"]["plan"] == "pro-plus"
    assert user["subscription"]["daysRemaining"] >= 27
    assert "activation_token" not in user["subscription"]


def test_status_downgrades_lapsed_subscription(client, auth_headers):
    receipt = create_subscription("u_lapsed", "pro", 2.50, "USD", "stripe")
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == receipt.subscription_id)
            .values(end_date=datetime.now(timezone.utc) - timedelta(days=1))
        )

    resp = client.get("/user/status", headers=auth_headers("u_lapsed"))

    user = resp.json()["user"]
    assert user["plan"] == "free"
    assert user["subscriptionStatus"] == "expired"
    assert user["subscriptionExpired"] is True
    assert user["subscription"] is None
    assert get_user("u_lapsed").subscription_status.value == "expired"


def test_status_updates_last_login(client, auth_headers):
    headers = auth_headers("u_login")
    client.get("/user/status", headers=headers)
    long_ago = datetime(2020, 1, 1, tzinfo=timezone.utc)
    with get_db_session() as session:
        session.execute(update(users).where(users.c.uid == "u_login").values(last_login_at=long_ago))

    client.get("/user/status", headers=headers)

    assert get_user("u_login").last_login_at > long_ago


def test_reset_daily(client, auth_headers):
    headers = auth_headers("u_reset")
    client.get("/user/status", headers=headers)
    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.uid == "u_reset")
            .values(daily_message_count=20, last_message_date=datetime.now(timezone.utc))
        )

    resp = client.post("/reset-daily", headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Daily count reset successfully"}
    assert get_user("u_reset").daily_message_count == 0


def test_status_requires_auth(client):
    resp = client.get("/user/status")
    assert resp.status_code == 401
