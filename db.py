from __future__ import annotations

import os
import uuid
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS credit_accounts (
                    user_id TEXT PRIMARY KEY,
                    email TEXT,
                    credits_remaining INTEGER
                        CHECK (credits_remaining IS NULL OR credits_remaining >= 0),
                    is_pro BOOLEAN NOT NULL DEFAULT false,
                    next_refill_at TIMESTAMPTZ NOT NULL,
                    version BIGINT NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                "ALTER TABLE credit_accounts ADD COLUMN IF NOT EXISTS version BIGINT NOT NULL DEFAULT 0"
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS credit_accounts_email_idx
                ON credit_accounts (lower(email));
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_profiles (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    role_title TEXT,
                    context TEXT,
                    screenshot_url TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS chat_profiles_user_idx
                ON chat_profiles (user_id, created_at DESC);
                """
            )


def insert_account_if_missing(
    cur,
    *,
    user_id: str,
    email: str | None,
    credits: int,
    next_refill_at: datetime,
) -> bool:
    cur.execute(
        """
        INSERT INTO credit_accounts (user_id, email, credits_remaining, is_pro, next_refill_at)
        VALUES (%s, %s, %s, false, %s)
        ON CONFLICT (user_id) DO NOTHING
        RETURNING user_id
        """,
        (user_id, email, credits, next_refill_at),
    )
    return cur.fetchone() is not None


def lock_account(cur, user_id: str) -> dict[str, Any] | None:
    cur.execute("SELECT * FROM credit_accounts WHERE user_id = %s FOR UPDATE", (user_id,))
    row = cur.fetchone()
    return dict(row) if row else None


def set_email_if_missing(cur, user_id: str, email: str) -> None:
    cur.execute(
        "UPDATE credit_accounts SET email = %s WHERE user_id = %s AND email IS NULL",
        (email, user_id),
    )


def refill_if_due(
    cur,
    user_id: str,
    *,
    now: datetime,
    credits: int,
    next_refill_at: datetime,
) -> dict[str, Any] | None:
    cur.execute(
        """
        UPDATE credit_accounts
        SET credits_remaining = %s, next_refill_at = %s,
            version = version + 1, updated_at = now()
        WHERE user_id = %s AND NOT is_pro AND next_refill_at <= %s
        RETURNING *
        """,
        (credits, next_refill_at, user_id, now),
    )
    row = cur.fetchone()
    return dict(row) if row else None


def debit_credit(cur, user_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        UPDATE credit_accounts
        SET credits_remaining = credits_remaining - 1,
            version = version + 1, updated_at = now()
        WHERE user_id = %s AND NOT is_pro AND credits_remaining > 0
        RETURNING *
        """,
        (user_id,),
    )
    row = cur.fetchone()
    return dict(row) if row else None


def get_account(cur, user_id: str) -> dict[str, Any] | None:
    cur.execute("SELECT * FROM credit_accounts WHERE user_id = %s", (user_id,))
    row = cur.fetchone()
    return dict(row) if row else None


def find_account_by_email(cur, email: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT * FROM credit_accounts
        WHERE lower(email) = lower(%s)
        ORDER BY created_at
        LIMIT 1
        """,
        (email,),
    )
    row = cur.fetchone()
    return dict(row) if row else None


def set_pro(cur, user_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        UPDATE credit_accounts
        SET is_pro = true, credits_remaining = NULL,
            version = version + 1, updated_at = now()
        WHERE user_id = %s
        RETURNING *
        """,
        (user_id,),
    )
    row = cur.fetchone()
    return dict(row) if row else None


class _LedgerCursor:
    """Ledger statements bound to one open transaction."""

    def __init__(self, cur) -> None:
        self._cur = cur

    def create_account(self, *, user_id, email, credits, next_refill_at) -> bool:
        return insert_account_if_missing(
            self._cur, user_id=user_id, email=email, credits=credits, next_refill_at=next_refill_at
        )

    def lock_account(self, user_id):
        return lock_account(self._cur, user_id)

    def set_email_if_missing(self, user_id, email) -> None:
        set_email_if_missing(self._cur, user_id, email)

    def refill_if_due(self, user_id, *, now, credits, next_refill_at):
        return refill_if_due(
            self._cur, user_id, now=now, credits=credits, next_refill_at=next_refill_at
        )

    def debit_credit(self, user_id):
        return debit_credit(self._cur, user_id)

    def get_account(self, user_id):
        return get_account(self._cur, user_id)

    def find_account_by_email(self, email):
        return find_account_by_email(self._cur, email)

    def set_pro(self, user_id):
        return set_pro(self._cur, user_id)


class PostgresStore:
    """Credit ledger and profile storage backed by Postgres."""

    @contextmanager
    def transaction(self) -> Iterator[_LedgerCursor]:
        ensure_schema()
        with get_connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield _LedgerCursor(cur)

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
        ensure_schema()
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_profiles (
                        id, user_id, name, category, role_title, context, screenshot_url
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        name,
                        category,
                        role_title,
                        context,
                        screenshot_url,
                    ),
                )
                return dict(cur.fetchone())

    def list_profiles(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        ensure_schema()
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT *
                    FROM chat_profiles
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (user_id, limit),
                )
                return [dict(row) for row in cur.fetchall()]

    def get_profile(self, user_id: str, profile_id: str) -> dict[str, Any] | None:
        ensure_schema()
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM chat_profiles WHERE id = %s AND user_id = %s",
                    (profile_id, user_id),
                )
                row = cur.fetchone()
                return dict(row) if row else None

    def delete_profile(self, user_id: str, profile_id: str) -> bool:
        ensure_schema()
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM chat_profiles WHERE id = %s AND user_id = %s RETURNING id",
                    (profile_id, user_id),
                )
                return cur.fetchone() is not None
