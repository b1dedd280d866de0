from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class _MemoryLedgerCursor:
    def __init__(self, accounts: dict[str, dict[str, Any]]) -> None:
        self._accounts = accounts

    def create_account(self, *, user_id, email, credits, next_refill_at) -> bool:
        if user_id in self._accounts:
            return False
        now = _now_utc()
        self._accounts[user_id] = {
            "user_id": user_id,
            "email": email,
            "credits_remaining": credits,
            "is_pro": False,
            "next_refill_at": next_refill_at,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        return True

    def lock_account(self, user_id):
        return self.get_account(user_id)

    def set_email_if_missing(self, user_id, email) -> None:
        row = self._accounts.get(user_id)
        if row is not None and row.get("email") is None:
            row["email"] = email

    def refill_if_due(self, user_id, *, now, credits, next_refill_at):
        row = self._accounts.get(user_id)
        if row is None or row["is_pro"] or row["next_refill_at"] > now:
            return None
        row["credits_remaining"] = credits
        row["next_refill_at"] = next_refill_at
        row["version"] += 1
        row["updated_at"] = _now_utc()
        return dict(row)

    def debit_credit(self, user_id):
        row = self._accounts.get(user_id)
        if row is None or row["is_pro"] or (row["credits_remaining"] or 0) <= 0:
            return None
        row["credits_remaining"] -= 1
        row["version"] += 1
        row["updated_at"] = _now_utc()
        return dict(row)

    def get_account(self, user_id):
        row = self._accounts.get(user_id)
        return dict(row) if row else None

    def find_account_by_email(self, email):
        matches = [
            row
            for row in self._accounts.values()
            if row.get("email") and row["email"].lower() == email.lower()
        ]
        if not matches:
            return None
        return dict(min(matches, key=lambda row: row["created_at"]))

    def set_pro(self, user_id):
        row = self._accounts.get(user_id)
        if row is None:
            return None
        row["is_pro"] = True
        row["credits_remaining"] = None
        row["version"] += 1
        row["updated_at"] = _now_utc()
        return dict(row)


class MemoryStore:
    """Process-local store with the same contract as ``db.PostgresStore``.

    Transactions are serialized by a single re-entrant lock and work on a
    copy of the accounts that is only swapped in on success, so a failed
    transaction leaves nothing behind.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, dict[str, Any]] = {}
        self._profiles: dict[str, dict[str, Any]] = {}

    @contextmanager
    def transaction(self) -> Iterator[_MemoryLedgerCursor]:
        with self._lock:
            working = copy.deepcopy(self._accounts)
            yield _MemoryLedgerCursor(working)
            self._accounts = working

    def create_profile(
        self,
        *,
        user_id: str,
        name: str,
        category: str,
        role_title: str | None,
        context: str | None,
        screenshot_url: str | None,
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "name": name,
            "category": category,
            "role_title": role_title,
            "context": context,
            "screenshot_url": screenshot_url,
            "created_at": _now_utc(),
        }
        with self._lock:
            self._profiles[row["id"]] = row
        return dict(row)

    def list_profiles(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(row) for row in self._profiles.values() if row["user_id"] == user_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[:limit]

    def get_profile(self, user_id: str, profile_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._profiles.get(profile_id)
            if row is None or row["user_id"] != user_id:
                return None
            return dict(row)

    def delete_profile(self, user_id: str, profile_id: str) -> bool:
        with self._lock:
            row = self._profiles.get(profile_id)
            if row is None or row["user_id"] != user_id:
                return False
            del self._profiles[profile_id]
            return True
