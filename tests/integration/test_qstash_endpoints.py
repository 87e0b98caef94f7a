import base64
import hashlib
import json
import time
from datetime import timedelta

import jwt

from tests.conftest import NOW, make_session

APP_URL = "https://mentors.example.com"


def _sign(raw: bytes, path: str, key: str = "sig-current", url: str | None = None) -> str:
    now = int(time.time())
    claims = {
        "iss": "Upstash",
        "sub": url or f"{APP_URL}{path}",
        "iat": now,
        "nbf": now,
        "exp": now + 300,
        "body": base64.urlsafe_b64encode(hashlib.sha256(raw).digest()).decode().rstrip("="),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def _post(client, path, payload, **sign_kwargs):
    raw = json.dumps(payload).encode("utf-8")
    return client.post(
        path,
        content=raw,
        headers={
            "Upstash-Signature": _sign(raw, path, **sign_kwargs),
            "Content-Type": "application/json",
        },
    )


def _schedule_session(client, fake_sessions, fake_queue):
    fake_sessions.add(make_session(start=NOW + timedelta(days=5)))
    response = client.post("/schedule", json={"sessionId": "sess-1"})
    assert response.status_code == 200
    return fake_queue.published[0].body


def test_signed_delivery_sends_batch(client, fake_sessions, fake_queue, fake_mailer):
    body = _schedule_session(client, fake_sessions, fake_queue)

    response = _post(client, "/qstash/worker", body)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["isBatch"] is True
    assert [r["emailId"] for r in data["results"]] == ["email-1", "email-2"]
    assert len(fake_mailer.sent) == 2


def test_next_signing_key_is_accepted(client, fake_sessions, fake_queue):
    body = _schedule_session(client, fake_sessions, fake_queue)
    assert _post(client, "/qstash/worker", body, key="sig-next").status_code == 200


def test_wrong_key_is_rejected(client, fake_sessions, fake_queue, fake_mailer):
    body = _schedule_session(client, fake_sessions, fake_queue)

    response = _post(client, "/qstash/worker", body, key="not-a-key")

    assert response.status_code == 401
    assert fake_mailer.sent == []


def test_signature_for_another_url_is_rejected(client, fake_sessions, fake_queue):
    body = _schedule_session(client, fake_sessions, fake_queue)
    response = _post(client, "/qstash/worker", body, url=f"{APP_URL}/qstash/callback")
    assert response.status_code == 401


def test_tampered_body_is_rejected(client):
    raw = json.dumps({"isBatch": True}).encode()
    response = client.post(
        "/qstash/worker",
        content=b'{"isBatch": false}',
        headers={"Upstash-Signature": _sign(raw, "/qstash/worker")},
    )
    assert response.status_code == 401


def test_unsigned_request_rejected_in_production(client, services):
    services.settings.environment = "production"
    response = client.post("/qstash/worker", json={"type": "prep24h"})
    assert response.status_code == 401


def test_unsigned_request_allowed_outside_production(client):
    response = client.post("/qstash/worker", json={"type": "not-a-type"})
    assert response.status_code == 400


def test_invalid_json_is_bad_request(client):
    response = client.post("/qstash/worker", content=b"{not json")
    assert response.status_code == 400


def test_store_outage_answers_503_so_queue_retries(client, fake_sessions, fake_queue, fake_redis):
    body = _schedule_session(client, fake_sessions, fake_queue)
    fake_redis.available = False

    response = _post(client, "/qstash/worker", body)

    assert response.status_code == 503


def test_callback_after_recorded_delivery_changes_nothing(client, fake_sessions, fake_queue):
    body = _schedule_session(client, fake_sessions, fake_queue)
    job_id = body["recipients"][0]["jobId"]
    _post(client, "/qstash/worker", body)

    callback = {
        "status": 200,
        "body": base64.b64encode(json.dumps({"results": [{"jobId": job_id, "emailId": "x"}]}).encode()).decode(),
    }
    response = _post(client, "/qstash/callback", callback)

    assert response.status_code == 200
    assert response.json() == {"success": True, "reconciled": 0}


def test_callback_always_answers_200(client, fake_redis):
    fake_redis.available = False
    callback = {
        "body": base64.b64encode(json.dumps({"results": [{"jobId": "j-1", "emailId": "x"}]}).encode()).decode()
    }

    response = _post(client, "/qstash/callback", callback)

    assert response.status_code == 200
    assert response.json()["success"] is False


def test_failure_callback_dead_letters_jobs(client, fake_sessions, fake_queue):
    body = _schedule_session(client, fake_sessions, fake_queue)
    failure = {
        "status": 500,
        "sourceBody": base64.b64encode(json.dumps(body).encode()).decode(),
    }

    response = _post(client, "/qstash/failure", failure)

    assert response.status_code == 200
    assert response.json() == {"success": True, "failed": 2, "deadLettered": 2}

    dlq = client.get("/jobs", params={"dlq": "true"}).json()
    assert dlq["count"] == 2
    assert dlq["deadLetterQueue"][0]["reason"] == "Queue delivery retries exhausted (last HTTP status 500)"
