from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import BaseModel

from errors import QuotaExceeded
from events import BalanceBroker

logger = logging.getLogger("kue.ledger")

FREE_TIER_CREDITS = 5
REFILL_INTERVAL = timedelta(hours=20)

REASON_PRO = "pro"
REASON_REGENERATION = "regeneration"
REASON_BILLED = "billed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CreditAccount(BaseModel):
    user_id: str
    email: str | None = None
    credits_remaining: int | None
    is_pro: bool = False
    next_refill_at: datetime
    version: int = 0

    @property
    def unlimited(self) -> bool:
        return self.is_pro or self.credits_remaining is None

    def refill_in_seconds(self, now: datetime) -> int:
        if self.unlimited:
            return 0
        return max(0, int((self.next_refill_at - now).total_seconds()))

    def to_event(self) -> dict[str, Any]:
        return {
            "credits_remaining": None if self.unlimited else self.credits_remaining,
            "unlimited": self.unlimited,
            "is_pro": self.is_pro,
            "next_refill_at": self.next_refill_at.isoformat(),
            "version": self.version,
        }


class Decision(BaseModel):
    billed: bool
    reason: str
    account: CreditAccount


def _account_from_row(row: dict[str, Any]) -> CreditAccount:
    return CreditAccount(
        user_id=row["user_id"],
        email=row.get("email"),
        credits_remaining=row.get("credits_remaining"),
        is_pro=bool(row.get("is_pro")),
        next_refill_at=row["next_refill_at"],
        version=row.get("version") or 0,
    )


class CreditLedger:
    """Authoritative credit accounting for reply generation.

    Every read self-heals a missing account and applies the lazy refill in
    the same transaction as any billing decision. Mutations are published
    on the broker after the transaction commits.
    """

    def __init__(
        self,
        store,
        broker: BalanceBroker | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.store = store
        self.broker = broker or BalanceBroker()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _prepare(self, tx, user_id: str, email: str | None, now: datetime) -> tuple[dict[str, Any], bool]:
        changed = tx.create_account(
            user_id=user_id,
            email=email,
            credits=FREE_TIER_CREDITS,
            next_refill_at=now + REFILL_INTERVAL,
        )
        if changed:
            logger.info("Initialized credit account for user %s.", user_id)
        row = tx.lock_account(user_id)
        if row is None:
            raise RuntimeError(f"Credit account for {user_id} vanished.")
        if email and not row.get("email"):
            tx.set_email_if_missing(user_id, email)
            row["email"] = email
        refilled = tx.refill_if_due(
            user_id,
            now=now,
            credits=FREE_TIER_CREDITS,
            next_refill_at=now + REFILL_INTERVAL,
        )
        if refilled is not None:
            logger.info("Refilled credits for user %s.", user_id)
            row = refilled
            changed = True
        return row, changed

    def _publish(self, account: CreditAccount) -> None:
        self.broker.publish(account.user_id, account.to_event())

    def get_balance(self, user_id: str, email: str | None = None) -> CreditAccount:
        now = self.now()
        with self.store.transaction() as tx:
            row, changed = self._prepare(tx, user_id, email, now)
        account = _account_from_row(row)
        if changed:
            self._publish(account)
        return account

    def authorize_and_bill(
        self,
        user_id: str,
        is_regeneration: bool,
        email: str | None = None,
    ) -> Decision:
        now = self.now()
        rejected = False
        with self.store.transaction() as tx:
            row, changed = self._prepare(tx, user_id, email, now)
            if row.get("is_pro"):
                reason = REASON_PRO
            elif is_regeneration:
                reason = REASON_REGENERATION
            else:
                debited = tx.debit_credit(user_id)
                if debited is None:
                    rejected = True
                    reason = REASON_BILLED
                else:
                    row = debited
                    changed = True
                    reason = REASON_BILLED

        account = _account_from_row(row)
        if changed:
            self._publish(account)
        if rejected:
            logger.info("Quota exceeded for user %s.", user_id)
            raise QuotaExceeded(
                "You're out of free credits.",
                next_refill_at=account.next_refill_at.isoformat(),
            )
        billed = reason == REASON_BILLED
        return Decision(billed=billed, reason=reason, account=account)

    def grant_pro(self, user_id: str) -> CreditAccount | None:
        with self.store.transaction() as tx:
            row = tx.set_pro(user_id)
        if row is None:
            return None
        account = _account_from_row(row)
        logger.info("Upgraded user %s to Pro.", user_id)
        self._publish(account)
        return account

    def get_account(self, user_id: str) -> CreditAccount | None:
        with self.store.transaction() as tx:
            row = tx.get_account(user_id)
        return _account_from_row(row) if row else None

    def find_user_by_email(self, email: str) -> str | None:
        with self.store.transaction() as tx:
            row = tx.find_account_by_email(email.strip())
        return row["user_id"] if row else None
