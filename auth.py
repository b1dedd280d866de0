from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def create_token(payload: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    """Mint an access token the way the identity provider does.

    Production tokens come from the identity provider; this is used to issue
    them for local runs and in tests.
    """
    claims = dict(payload)
    claims["exp"] = int(time.time()) + ttl_seconds
    body = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return f"{body}.{_b64encode(signature)}"


def verify_token(token: str, secret: str) -> dict[str, Any]:
    """Verify token signature and expiry, returning the payload if valid."""
    try:
        body, signature = token.split(".", 1)
    except ValueError as exc:
        raise ValueError("Invalid token format.") from exc

    expected = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    if not hmac.compare_digest(_b64encode(expected), signature):
        raise ValueError("Invalid token signature.")

    try:
        payload = json.loads(_b64decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Invalid token payload.") from exc
    exp = payload.get("exp")
    if exp is None or int(exp) < int(time.time()):
        raise ValueError("Token expired.")

    return payload


def sign_webhook_body(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a raw webhook body, as the payment gateway sends it."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    candidate = signature.strip().lower()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(candidate, sign_webhook_body(raw_body, secret))
