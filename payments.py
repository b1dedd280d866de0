from __future__ import annotations

import logging
import secrets
from typing import Any

import requests

from config import env, int_env, razorpay_key_id, razorpay_key_secret
from errors import UpstreamFailure

logger = logging.getLogger("kue.payments")

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
PLAN_PRO = "pro"
CAPTURED_EVENT = "payment.captured"


def _api_base() -> str:
    return (env("RAZORPAY_API_BASE_URL", RAZORPAY_API_BASE) or RAZORPAY_API_BASE).rstrip("/")


def plan_price(plan: str) -> tuple[int, str]:
    """Amount in the smallest currency unit and the currency for a plan."""
    if plan != PLAN_PRO:
        raise ValueError(f"Unsupported plan: {plan}")
    amount = int_env("RAZORPAY_PRO_AMOUNT", 19900)
    currency = env("RAZORPAY_CURRENCY", "INR") or "INR"
    return amount, currency


def create_order(plan: str, user_id: str) -> dict[str, Any]:
    amount, currency = plan_price(plan)
    body = {
        "amount": amount,
        "currency": currency,
        "receipt": f"receipt_{secrets.token_hex(6)}",
        "notes": {"plan": plan, "user_id": user_id},
    }
    try:
        resp = requests.post(
            f"{_api_base()}/orders",
            auth=(razorpay_key_id(), razorpay_key_secret()),
            json=body,
            timeout=15,
        )
    except requests.RequestException as exc:
        logger.exception("Failed to reach Razorpay.")
        raise UpstreamFailure("Payment provider unavailable.") from exc

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400 or not isinstance(data, dict) or data.get("error"):
        error = data.get("error") if isinstance(data, dict) else None
        description = error.get("description") if isinstance(error, dict) else None
        logger.error("Razorpay order error (%s): %s", resp.status_code, description or resp.text)
        raise UpstreamFailure(description or "Could not start payment.")
    if not data.get("id"):
        raise UpstreamFailure("Payment provider returned no order id.")

    return {
        "order_id": data["id"],
        "amount": int(data.get("amount", amount)),
        "currency": data.get("currency", currency),
        "key_id": razorpay_key_id(),
    }


def captured_payment(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Pull the fields the ledger needs out of a payment.captured event."""
    if not isinstance(payload, dict):
        return None
    if str(payload.get("event") or "").lower() != CAPTURED_EVENT:
        return None
    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    if not isinstance(entity, dict):
        return None
    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        notes = {}
    email = entity.get("email")
    return {
        "payment_id": entity.get("id"),
        "order_id": entity.get("order_id"),
        "email": str(email).strip().lower() if email else None,
        "user_id": str(notes["user_id"]) if notes.get("user_id") else None,
        "plan": notes.get("plan") or PLAN_PRO,
    }
