"""Client-side quota arbitration.

``QuotaArbiter`` keeps a locally displayed credit count roughly in sync with
the server ledger without waiting on it, and decides whether the current
input text may be generated (billable) or only regenerated (free). The
server stays authoritative: each balance it reports carries a version, and
the newest one seen overwrites local math.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests

from errors import QuotaExceeded, UpstreamFailure

logger = logging.getLogger("kue.client")

STATE_UNBILLED = "unbilled"
STATE_BILLED = "billed"

STATUS_OK = "ok"
STATUS_BLOCKED = "blocked"
STATUS_QUOTA_EXCEEDED = "quota_exceeded"
STATUS_ERROR = "error"
STATUS_STALE = "stale"

# Ticks to wait before asking again when a refill refetch did not land.
REFETCH_RETRY_TICKS = 5


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


class ApiClient:
    """Thin HTTP transport for the reply and credit endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 60,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamFailure("Could not reach the server.") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code == 402:
            detail = data.get("detail") if isinstance(data, dict) else None
            detail = detail if isinstance(detail, dict) else {}
            raise QuotaExceeded(
                detail.get("message"),
                next_refill_at=detail.get("next_refill_at"),
            )
        if resp.status_code >= 400:
            detail = data.get("detail") if isinstance(data, dict) else None
            if isinstance(detail, dict):
                detail = detail.get("message")
            raise UpstreamFailure(str(detail or f"Request failed ({resp.status_code})."))
        return data if isinstance(data, dict) else {}

    def get_balance(self) -> dict[str, Any]:
        return self._request("GET", "/api/credits")

    def generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/api/replies", payload)

    def create_order(self, plan: str = "pro") -> dict[str, Any]:
        return self._request("POST", "/api/payments/order", {"plan": plan})


@dataclass
class GenerationOutcome:
    status: str
    replies: list[str] = field(default_factory=list)
    analysis: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class QuotaArbiter:
    def __init__(
        self,
        api,
        *,
        on_quota_exceeded: Callable[[QuotaExceeded], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.api = api
        self.on_quota_exceeded = on_quota_exceeded
        self.on_error = on_error
        self._clock = clock
        self.displayed_credits: int | None = None
        self.is_pro = False
        self.last_billed_text: str | None = None
        self.next_refill_at: datetime | None = None
        self.active_profile_id: str | None = None
        self._version: int | None = None
        self._refetch_wait = 0

    # Balance

    def load(self) -> bool:
        """Fetch the authoritative balance; False when the fetch failed."""
        try:
            balance = self.api.get_balance()
        except UpstreamFailure as exc:
            logger.warning("Balance fetch failed: %s", exc)
            return False
        self.reconcile(balance)
        return True

    def _already_seen(self, balance: dict[str, Any]) -> bool:
        version = balance.get("version")
        return version is not None and self._version is not None and int(version) <= self._version

    def reconcile(self, balance: dict[str, Any]) -> bool:
        """Apply an authoritative balance; False when a newer one was already applied."""
        version = balance.get("version")
        if version is not None and self._version is not None and int(version) < self._version:
            logger.debug("Ignoring balance version %s; already at %s.", version, self._version)
            return False
        if version is not None:
            self._version = int(version)
        if "is_pro" in balance:
            self.is_pro = bool(balance["is_pro"])
        if balance.get("unlimited"):
            self.is_pro = True
        if "credits_remaining" in balance:
            credits = balance["credits_remaining"]
            self.displayed_credits = None if credits is None else max(0, int(credits))
        refill_at = _parse_timestamp(balance.get("next_refill_at"))
        if refill_at is not None:
            self.next_refill_at = refill_at
        return True

    def on_push(self, event: dict[str, Any]) -> None:
        self.reconcile(event)

    def refill_countdown(self, now: datetime | None = None) -> timedelta:
        if self.next_refill_at is None or self.is_pro:
            return timedelta(0)
        now = now or self._clock()
        return max(timedelta(0), self.next_refill_at - now)

    def tick(self, now: datetime | None = None) -> timedelta:
        """Called once per second; refetches when the countdown reaches zero.

        A refetch that fails, or that comes back with the same deadline (the
        server has not refilled yet), is retried every
        ``REFETCH_RETRY_TICKS`` ticks until the deadline moves.
        """
        remaining = self.refill_countdown(now)
        if remaining > timedelta(0) or self.next_refill_at is None or self.is_pro:
            self._refetch_wait = 0
            return remaining
        if self._refetch_wait > 0:
            self._refetch_wait -= 1
            return remaining
        deadline = self.next_refill_at
        if not self.load() or (self.next_refill_at == deadline and not self.is_pro):
            self._refetch_wait = REFETCH_RETRY_TICKS
        return remaining

    # Billed / unbilled

    def select_profile(self, profile_id: str | None) -> None:
        if profile_id != self.active_profile_id:
            self.active_profile_id = profile_id
            self.last_billed_text = None

    def state(self, text: str) -> str:
        if self.last_billed_text is not None and text == self.last_billed_text:
            return STATE_BILLED
        return STATE_UNBILLED

    def has_credit(self) -> bool:
        return self.is_pro or (self.displayed_credits or 0) > 0

    def can_generate(self, text: str) -> bool:
        return bool(text.strip()) and self.state(text) == STATE_UNBILLED and self.has_credit()

    def can_regenerate(self, text: str) -> bool:
        return self.state(text) == STATE_BILLED

    def _fail(self, message: str) -> GenerationOutcome:
        if self.on_error:
            self.on_error(message)
        return GenerationOutcome(status=STATUS_ERROR, error=message)

    def request_generation(
        self,
        text: str,
        tone: str,
        is_regeneration: bool,
        profile: dict[str, Any],
    ) -> GenerationOutcome:
        if not text.strip():
            return GenerationOutcome(status=STATUS_BLOCKED, error="Please enter an incoming message.")
        state = self.state(text)
        if is_regeneration and state != STATE_BILLED:
            return GenerationOutcome(status=STATUS_BLOCKED, error="Generate this message first.")
        if not is_regeneration and state == STATE_BILLED:
            return GenerationOutcome(status=STATUS_BLOCKED, error="Already generated; regenerate instead.")

        profile_id = profile.get("id")
        payload: dict[str, Any] = {
            "message_text": text,
            "tone": tone,
            "is_regeneration": is_regeneration,
        }
        if profile_id:
            payload["profile_id"] = profile_id
        else:
            payload["profile"] = {
                key: profile.get(key)
                for key in ("name", "category", "role_title", "context", "screenshot_url")
            }

        try:
            result = self.api.generate(payload)
        except QuotaExceeded as exc:
            if self.on_quota_exceeded:
                self.on_quota_exceeded(exc)
            return GenerationOutcome(status=STATUS_QUOTA_EXCEEDED, error=exc.message)
        except UpstreamFailure as exc:
            return self._fail(exc.message)

        if profile_id != self.active_profile_id:
            logger.info("Dropping reply for profile %s; session moved on.", profile_id)
            return GenerationOutcome(status=STATUS_STALE)

        credits = result.get("credits")
        if not isinstance(credits, dict):
            credits = None
        if not is_regeneration:
            # A push at or past this response's version already counts the debit.
            already_counted = credits is not None and self._already_seen(credits)
            if self.displayed_credits is not None and not self.is_pro and not already_counted:
                self.displayed_credits = max(0, self.displayed_credits - 1)
            self.last_billed_text = text
        if credits is not None:
            self.reconcile(credits)

        return GenerationOutcome(
            status=STATUS_OK,
            replies=list(result.get("replies") or []),
            analysis=result.get("analysis"),
        )
