from datetime import timedelta

from tests.conftest import NOW, make_session

AUTH = {"Authorization": "Bearer cron-secret"}


def test_cron_requires_secret(client):
    assert client.post("/cron/daily-notifications").status_code == 401
    assert client.post("/cron/reconcile", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_cron_refuses_everything_without_configured_secret(client, services):
    services.settings.CRON_SECRET = None
    assert client.post("/cron/reconcile", headers=AUTH).status_code == 401


def test_daily_notifications_sends_due_reminders(client, fake_sessions, fake_queue):
    fake_sessions.add(
        make_session("prep", start=NOW + timedelta(hours=24)),
        make_session("done", start=NOW - timedelta(hours=2), status="Completed"),
        make_session("later", start=NOW + timedelta(days=6)),
    )

    response = client.post("/cron/daily-notifications", headers=AUTH)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    result = data["result"]
    assert result["sessionsChecked"] == 3
    assert result["dueByType"] == {"prep24h": 2, "feedbackImmediate": 4}
    assert result["scheduled"] == 6
    assert len(fake_queue.published) == 2


def test_daily_notifications_twice_sends_nothing_new(client, fake_sessions):
    fake_sessions.add(make_session(start=NOW + timedelta(hours=24)))
    client.post("/cron/daily-notifications", headers=AUTH)

    result = client.post("/cron/daily-notifications", headers=AUTH).json()["result"]

    assert result["scheduled"] == 0
    assert result["duplicates"] == 2


def test_daily_notifications_source_failure(client, fake_sessions):
    fake_sessions.fail_with = "BaseQL timeout"

    data = client.post("/cron/daily-notifications", headers=AUTH).json()

    assert data["success"] is False
    assert data["result"]["error"] == "BaseQL timeout"


def test_daily_notifications_without_session_source(client, fake_sessions):
    fake_sessions.configured = False

    data = client.post("/cron/daily-notifications", headers=AUTH).json()

    assert data["success"] is False
    assert data["result"]["disabled"] is True


def test_reconcile(client, fake_sessions, clock):
    fake_sessions.add(make_session(start=NOW + timedelta(hours=24)))
    client.post("/cron/daily-notifications", headers=AUTH)
    clock.advance(hours=1)

    data = client.post("/cron/reconcile", headers=AUTH).json()

    assert data == {"success": True, "result": {"success": True, "checked": 2, "failed": 2}}


def test_reconcile_store_outage(client, fake_redis):
    fake_redis.available = False
    assert client.post("/cron/reconcile", headers=AUTH).status_code == 503
