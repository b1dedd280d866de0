from __future__ import annotations

import pytest

import config
from auth import create_token, verify_token
from events import BalanceBroker


def test_token_round_trip():
    token = create_token({"sub": "u1", "email": "a@b.com"}, "secret", 60)

    payload = verify_token(token, "secret")

    assert payload["sub"] == "u1"
    assert payload["email"] == "a@b.com"


def test_token_with_wrong_secret_is_rejected():
    token = create_token({"sub": "u1"}, "secret", 60)

    with pytest.raises(ValueError, match="signature"):
        verify_token(token, "other")


def test_expired_token_is_rejected():
    token = create_token({"sub": "u1"}, "secret", -10)

    with pytest.raises(ValueError, match="expired"):
        verify_token(token, "secret")


def test_malformed_token_is_rejected():
    with pytest.raises(ValueError):
        verify_token("no-dot-here", "secret")


def test_blank_env_counts_as_unset(monkeypatch):
    monkeypatch.setenv("KUE_BLANK", "   ")

    assert config.env("KUE_BLANK", "fallback") == "fallback"


def test_validate_env_reports_missing_settings(monkeypatch):
    monkeypatch.delenv("AUTH_SECRET", raising=False)
    monkeypatch.setenv("CREDIT_STORE", "postgres")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RAZORPAY_WEBHOOK_SECRET", raising=False)

    with pytest.raises(RuntimeError) as excinfo:
        config.validate_env()

    message = str(excinfo.value)
    assert "AUTH_SECRET is required." in message
    assert "DATABASE_URL is required" in message
    assert "RAZORPAY_WEBHOOK_SECRET is required." in message


def test_memory_store_refused_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("FRONTEND_URL", "https://kue.app")

    with pytest.raises(RuntimeError, match="CREDIT_STORE=memory"):
        config.validate_env()


def test_cors_origins_skip_wildcards(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "*, https://extra.test/ ,http://localhost:5173")

    assert config.cors_origins() == ["http://localhost:5173", "https://extra.test"]


def test_broker_delivers_per_user_and_unsubscribes():
    broker = BalanceBroker()
    seen_a, seen_b = [], []
    unsubscribe = broker.subscribe("a", seen_a.append)
    broker.subscribe("b", seen_b.append)

    assert broker.publish("a", {"credits_remaining": 3}) == 1
    unsubscribe()
    broker.publish("a", {"credits_remaining": 2})

    assert seen_a == [{"credits_remaining": 3}]
    assert seen_b == []
    assert broker.subscriber_count("a") == 0


def test_broker_survives_failing_subscriber():
    broker = BalanceBroker()
    seen = []

    def broken(event):
        raise RuntimeError("socket closed")

    broker.subscribe("a", broken)
    broker.subscribe("a", seen.append)

    assert broker.publish("a", {"credits_remaining": 1}) == 1
    assert seen == [{"credits_remaining": 1}]
