from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

os.environ.setdefault("ENVIRONMENT", "test")
os.environ["AUTH_SECRET"] = "test-auth-secret-0123456789abcdef0123"
os.environ["FRONTEND_URL"] = "http://localhost:5173"
os.environ["CREDIT_STORE"] = "memory"
os.environ["PAYMENTS_ENABLED"] = "true"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["LLM_API_KEY"] = "test-llm-key"

import pytest

from auth import create_token
from events import BalanceBroker
from ledger import CreditLedger
from memstore import MemoryStore

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLLM:
    def __init__(self, content: str) -> None:
        self.content = content
        self.calls: list = []

    def invoke(self, messages):
        self.calls.append(messages)
        if isinstance(self.content, Exception):
            raise self.content
        return SimpleNamespace(content=self.content)


REPLY_JSON = (
    '{"replies": ["Sure, coffee works!", "Tomorrow is perfect.", "Only if you\'re buying ;)"],'
    ' "analysis": {"translation": "They want to see you.", "threat_level": 5,'
    ' "strategy_advice": "Say yes and pick a time."}}'
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock) -> CreditLedger:
    return CreditLedger(MemoryStore(), BalanceBroker(), clock=clock)


@pytest.fixture
def fake_llm(monkeypatch) -> FakeLLM:
    import replies

    llm = FakeLLM(REPLY_JSON)
    monkeypatch.setattr(replies, "get_llm", lambda model: llm)
    return llm


@pytest.fixture
def app_client(ledger, fake_llm, monkeypatch):
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(main, "_get_ledger", lambda: ledger)
    with TestClient(main.app) as client:
        yield client


def make_token(user_id: str = "user-1", email: str | None = "user1@example.com") -> str:
    payload = {"sub": user_id}
    if email:
        payload["email"] = email
    return create_token(payload, os.environ["AUTH_SECRET"], 3600)


def auth_headers(user_id: str = "user-1", email: str | None = "user1@example.com") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


def drain_credits(ledger: CreditLedger, user_id: str, leave: int = 0) -> None:
    account = ledger.get_balance(user_id)
    for _ in range(account.credits_remaining - leave):
        ledger.authorize_and_bill(user_id, False)
