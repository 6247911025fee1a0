"""
Tests for the HTTP surface.

Tests cover:
- Health probes and metrics
- Submission (accepted, duplicate, invalid phone number)
- Signed transport callbacks driving the lifecycle
- Signed inbox deliveries
- Recovery and event endpoints
"""

import hashlib
import hmac
import json
import os
import warnings

import pytest
from fastapi.testclient import TestClient

from sms_wallet.main import app
from sms_wallet.storage import Base, engine


TEST_CALLBACK_SECRET = os.environ["CALLBACK_SECRET"]
PHONE = "+14155550100"


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def signed_post(client, path: str, payload: dict):
    body = json.dumps(payload)
    return client.post(
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body, TEST_CALLBACK_SECRET),
        },
    )


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def queued_tokens(client, request_id: str) -> list:
    transport = client.app.state.service.transport
    return [q.correlation_token for q in transport.queued if q.correlation_token.startswith(f"{request_id}:")]


def submit(client, request_id="r1", body="WLT1|TX|abc", phone=PHONE):
    return client.post("/messages", json={"request_id": request_id, "phone_number": phone, "body": body})


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics(self, client):
        submit(client)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "outbound_transitions_total" in response.text
        assert "http_requests_total" in response.text


class TestSubmit:
    def test_accepted(self, client):
        response = submit(client, body="A" * 400)

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "request_id": "r1", "segments": 3}
        assert response.headers["X-Request-ID"]

    def test_duplicate(self, client):
        assert submit(client).status_code == 202

        response = submit(client, body="something else")

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_REQUEST"
        detail = client.get("/messages/r1").json()
        assert detail["state"] == "SUBMITTED"
        assert len(detail["segments"]) == 1

    def test_invalid_phone_number(self, client):
        response = submit(client, phone="0044 20 7946")

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_PHONE_NUMBER"
        assert client.get("/messages/r1").status_code == 404

    def test_missing_fields(self, client):
        response = client.post("/messages", json={"request_id": "r1"})
        assert response.status_code == 422

    def test_get_unknown(self, client):
        response = client.get("/messages/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestCallbacks:
    def test_full_lifecycle(self, client):
        submit(client, body="A" * 400)
        tokens = queued_tokens(client, "r1")

        for token in tokens:
            response = signed_post(client, "/callbacks/sent", {"token": token, "result_code": -1})
            assert response.status_code == 200
            assert response.json() == {"status": "ok"}
        assert client.get("/messages/r1").json()["state"] == "SENT"

        signed_post(client, "/callbacks/delivered", {"token": tokens[0], "result_code": -1})
        signed_post(client, "/callbacks/delivered", {"token": tokens[1], "result_code": -1})
        signed_post(client, "/callbacks/delivered", {"token": tokens[2], "result_code": 2})

        detail = client.get("/messages/r1").json()
        assert detail["state"] == "DELIVERY_FAILED"
        assert detail["reason"] == "RADIO_OFF"
        assert detail["segments"][2]["delivered"] == "error"
        assert detail["segments"][2]["delivered_code"] == 2

        states = [
            e["state"] for e in client.get("/events").json()["data"]
            if e["type"] == "outbound_state_changed"
        ]
        assert states == ["SUBMITTED", "SENT", "DELIVERY_FAILED"]

    def test_missing_signature(self, client):
        response = client.post("/callbacks/sent", json={"token": "r1:1:0", "result_code": -1})
        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client):
        response = client.post(
            "/callbacks/delivered",
            content='{"token": "r1:1:0", "result_code": -1}',
            headers={"Content-Type": "application/json", "X-Signature": "0" * 64},
        )
        assert response.status_code == 401

    def test_invalid_body(self, client):
        response = signed_post(client, "/callbacks/sent", {"token": "r1:1:0"})
        assert response.status_code == 422

    def test_invalid_body_status_constant_not_deprecated(self, client):
        with warnings.catch_warnings():
            warnings.filterwarnings("error", message=".*HTTP_422", category=DeprecationWarning)
            sent = signed_post(client, "/callbacks/sent", {"token": "r1:1:0"})
            inbound = signed_post(client, "/inbound", {"raw_body": "WLT1|TX|x"})

        assert sent.status_code == 422
        assert inbound.status_code == 422

    def test_unusable_tokens_are_absorbed(self, client):
        for token in ("garbage", "ghost:1:0"):
            response = signed_post(client, "/callbacks/sent", {"token": token, "result_code": -1})
            assert response.status_code == 200

    def test_pending_list(self, client):
        submit(client, request_id="a")
        submit(client, request_id="b")
        (token,) = queued_tokens(client, "b")
        signed_post(client, "/callbacks/sent", {"token": token, "result_code": 3})

        response = client.get("/messages/pending")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["data"][0]["request_id"] == "a"


class TestInbound:
    def test_matched(self, client):
        response = signed_post(client, "/inbound", {
            "raw_body": "WLT1|TX|AMT=5|TO=999",
            "sender_address": "+919876543210",
            "sent_timestamp": 1736935200000,
            "received_at": 1736935201000,
        })

        assert response.status_code == 200
        assert response.json() == {"matched": True}
        (event,) = client.get("/events").json()["data"]
        assert event["type"] == "inbound_message_received"
        assert event["sender_address"] == "+919876543210"

    def test_ignored(self, client):
        response = signed_post(client, "/inbound", {
            "raw_body": "WLT|TX|AMT=5",
            "sent_timestamp": 1,
            "received_at": 2,
        })

        assert response.status_code == 200
        assert response.json() == {"matched": False}
        assert client.get("/events").json()["data"] == []

    def test_unsigned(self, client):
        response = client.post("/inbound", json={"raw_body": "WLT1|TX|x", "sent_timestamp": 1, "received_at": 2})
        assert response.status_code == 401


class TestRecovery:
    def test_recovery_redrives_transient_failure(self, client):
        submit(client, request_id="r2")
        (token,) = queued_tokens(client, "r2")
        signed_post(client, "/callbacks/sent", {"token": token, "result_code": 2})
        assert client.get("/messages/r2").json()["state"] == "SEND_FAILED_TEMP"

        response = client.post("/recovery")

        assert response.status_code == 200
        assert response.json() == {"redriven": 1}
        retry_token = queued_tokens(client, "r2")[-1]
        assert retry_token == "r2:2:0"

        signed_post(client, "/callbacks/sent", {"token": retry_token, "result_code": -1})
        detail = client.get("/messages/r2").json()
        assert detail["state"] == "SENT"
        assert detail["attempt"] == 2

    def test_events_limit(self, client):
        for i in range(3):
            submit(client, request_id=f"r{i}")
        client.post("/recovery")

        data = client.get("/events", params={"limit": 2}).json()["data"]
        assert len(data) == 2
        assert all(e["type"] == "outbound_state_changed" for e in data)
