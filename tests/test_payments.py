from __future__ import annotations

import json

import pytest
import requests

import payments
from auth import sign_webhook_body, verify_webhook_signature
from conftest import auth_headers
from errors import UpstreamFailure

WEBHOOK_SECRET = "rzp_webhook_secret"


def captured_event(email="user1@example.com", user_id=None):
    notes = {"plan": "pro"}
    if user_id:
        notes["user_id"] = user_id
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_123",
                    "order_id": "order_123",
                    "email": email,
                    "notes": notes,
                }
            }
        },
    }


def post_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode("utf-8")
    if signature is None:
        signature = sign_webhook_body(body, WEBHOOK_SECRET)
    return client.post(
        "/api/payments/razorpay/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )


def test_signature_helpers_round_trip():
    body = b'{"event":"payment.captured"}'
    signature = sign_webhook_body(body, WEBHOOK_SECRET)

    assert verify_webhook_signature(body, signature, WEBHOOK_SECRET)
    assert verify_webhook_signature(body, f"sha256={signature}", WEBHOOK_SECRET)
    assert not verify_webhook_signature(body + b" ", signature, WEBHOOK_SECRET)
    assert not verify_webhook_signature(body, None, WEBHOOK_SECRET)


def test_invalid_signature_is_rejected_without_mutation(app_client, ledger):
    ledger.get_balance("user-1", email="user1@example.com")

    resp = post_webhook(app_client, captured_event(user_id="user-1"), signature="deadbeef")

    assert resp.status_code == 401
    account = ledger.get_account("user-1")
    assert account.is_pro is False
    assert account.credits_remaining == 5


def test_missing_signature_is_rejected(app_client, ledger):
    ledger.get_balance("user-1", email="user1@example.com")
    body = json.dumps(captured_event(user_id="user-1"))

    resp = app_client.post("/api/payments/razorpay/webhook", content=body)

    assert resp.status_code == 401
    assert ledger.get_account("user-1").is_pro is False


def test_captured_payment_upgrades_user_by_notes(app_client, ledger):
    ledger.get_balance("user-1")
    events = []
    ledger.broker.subscribe("user-1", events.append)

    resp = post_webhook(app_client, captured_event(email=None, user_id="user-1"))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "upgraded": True}
    account = ledger.get_account("user-1")
    assert account.is_pro is True
    assert account.credits_remaining is None
    assert events[-1]["unlimited"] is True


def test_captured_payment_matches_user_by_email(app_client, ledger):
    ledger.get_balance("user-1", email="User1@Example.com")

    resp = post_webhook(app_client, captured_event(email="user1@example.com"))

    assert resp.json()["upgraded"] is True
    assert ledger.get_account("user-1").is_pro is True


def test_unknown_user_is_acknowledged(app_client, ledger):
    resp = post_webhook(app_client, captured_event(email="stranger@example.com", user_id="ghost"))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "upgraded": False}
    assert ledger.get_account("ghost") is None


def test_other_events_are_ignored(app_client, ledger):
    ledger.get_balance("user-1", email="user1@example.com")

    resp = post_webhook(app_client, {"event": "payment.failed", "payload": {}})

    assert resp.json() == {"received": True, "upgraded": False}
    assert ledger.get_account("user-1").is_pro is False


def test_signed_garbage_body_is_400(app_client):
    body = b"not json"
    resp = app_client.post(
        "/api/payments/razorpay/webhook",
        content=body,
        headers={"X-Razorpay-Signature": sign_webhook_body(body, WEBHOOK_SECRET)},
    )

    assert resp.status_code == 400


class FakeRazorpayResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data
        self.text = json.dumps(data)

    def json(self):
        return self._data


def test_create_order_sends_plan_and_user(monkeypatch):
    captured = {}

    def fake_post(url, auth, json, timeout):
        captured.update(url=url, auth=auth, json=json, timeout=timeout)
        return FakeRazorpayResponse(200, {"id": "order_abc", "amount": 19900, "currency": "INR"})

    monkeypatch.setattr(payments.requests, "post", fake_post)

    order = payments.create_order("pro", "user-1")

    assert order == {
        "order_id": "order_abc",
        "amount": 19900,
        "currency": "INR",
        "key_id": "rzp_test_key",
    }
    assert captured["url"] == "https://api.razorpay.com/v1/orders"
    assert captured["auth"] == ("rzp_test_key", "rzp_test_secret")
    assert captured["json"]["notes"] == {"plan": "pro", "user_id": "user-1"}
    assert captured["json"]["receipt"].startswith("receipt_")


def test_create_order_gateway_error(monkeypatch):
    monkeypatch.setattr(
        payments.requests,
        "post",
        lambda *args, **kwargs: FakeRazorpayResponse(400, {"error": {"description": "Bad key"}}),
    )

    with pytest.raises(UpstreamFailure, match="Bad key"):
        payments.create_order("pro", "user-1")


def test_create_order_timeout(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr(payments.requests, "post", fake_post)

    with pytest.raises(UpstreamFailure):
        payments.create_order("pro", "user-1")


def test_order_endpoint(app_client, monkeypatch):
    monkeypatch.setattr(
        payments,
        "create_order",
        lambda plan, user_id: {"order_id": "order_x", "amount": 19900, "currency": "INR", "key_id": "k"},
    )

    resp = app_client.post("/api/payments/order", json={"plan": "pro"}, headers=auth_headers())

    assert resp.status_code == 200
    assert resp.json()["order_id"] == "order_x"


def test_order_endpoint_rejects_unknown_plan(app_client):
    resp = app_client.post("/api/payments/order", json={"plan": "gold"}, headers=auth_headers())

    assert resp.status_code == 400


def test_order_endpoint_rejects_existing_pro(app_client, ledger):
    ledger.get_balance("user-1")
    ledger.grant_pro("user-1")

    resp = app_client.post("/api/payments/order", json={"plan": "pro"}, headers=auth_headers())

    assert resp.status_code == 409


def test_captured_payment_parser_ignores_other_events():
    assert payments.captured_payment({"event": "order.paid"}) is None
    parsed = payments.captured_payment(captured_event(email=" A@B.com ", user_id="u9"))
    assert parsed["email"] == "a@b.com"
    assert parsed["user_id"] == "u9"
