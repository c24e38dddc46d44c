"""SQLite-backed account and idempotency store."""

from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

from tutorchat.core.models import MemberAccount
from tutorchat.storage.kv import AccountStore
from tutorchat.util.logger import get_logger

logger = get_logger("storage.sqlite")

T = TypeVar("T")


def join_features(features: set[str] | frozenset[str]) -> str:
    return ",".join(sorted(item.strip() for item in features if item.strip()))


def split_features(raw: str | None) -> frozenset[str]:
    return frozenset(item.strip() for item in (raw or "").split(",") if item.strip())


def to_epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class SqliteAccountStore(AccountStore):
    def __init__(self, db_path: str = "data/tutorchat.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS member_account (
                  user_id TEXT PRIMARY KEY,
                  membership_name TEXT,
                  features TEXT NOT NULL DEFAULT '',
                  expires_at INTEGER,
                  chat_credits INTEGER NOT NULL DEFAULT 0 CHECK (chat_credits >= 0)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_start_idempotency (
                  user_id TEXT NOT NULL,
                  idem_key TEXT NOT NULL,
                  expires_at INTEGER NOT NULL,
                  PRIMARY KEY (user_id, idem_key)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_idempotency_expires_at
                ON chat_start_idempotency (expires_at)
                """
            )
            conn.commit()
        logger.info("sqlite store initialized path=%s", self.db_path)

    def _with_retry(self, fn: Callable[[], T], retries: int = 5) -> T:
        for attempt in range(retries):
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc).lower() or attempt == retries - 1:
                    raise
                time.sleep(0.01 * (attempt + 1))
        raise RuntimeError("unreachable retry state")

    def get_account(self, user_id: str) -> MemberAccount | None:
        def _read() -> tuple | None:
            with self._connect() as conn:
                return conn.execute(
                    """
                    SELECT user_id, membership_name, features, expires_at, chat_credits
                    FROM member_account WHERE user_id = ?
                    """,
                    (user_id,),
                ).fetchone()

        row = self._with_retry(_read)
        if not row:
            return None
        return MemberAccount(
            user_id=row[0],
            membership_name=row[1],
            features=split_features(row[2]),
            expires_at=from_epoch(row[3]),
            chat_credits=int(row[4]),
        )

    def upsert_account(
        self,
        *,
        user_id: str,
        membership_name: str | None,
        features: set[str] | frozenset[str],
        expires_at: datetime | None,
        chat_credits: int,
    ) -> MemberAccount:
        def _write() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO member_account (user_id, membership_name, features, expires_at, chat_credits)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                      membership_name=excluded.membership_name,
                      features=excluded.features,
                      expires_at=excluded.expires_at,
                      chat_credits=excluded.chat_credits
                    """,
                    (user_id, membership_name, join_features(features), to_epoch(expires_at), max(0, int(chat_credits))),
                )
                conn.commit()

        self._with_retry(_write)
        account = self.get_account(user_id)
        assert account is not None
        return account

    def consume_credit(self, user_id: str) -> int | None:
        def _decrement() -> tuple | None:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE member_account
                    SET chat_credits = chat_credits - 1
                    WHERE user_id = ? AND chat_credits > 0
                    RETURNING chat_credits
                    """,
                    (user_id,),
                ).fetchone()
                conn.commit()
                return row

        row = self._with_retry(_decrement)
        return int(row[0]) if row else None

    def claim_idempotency_key(self, user_id: str, key: str, ttl_seconds: int, now_ts: int) -> bool:
        expires_at = int(now_ts) + max(1, int(ttl_seconds))

        def _claim() -> tuple | None:
            with self._connect() as conn:
                # an expired record may be taken over; a live one blocks the insert
                row = conn.execute(
                    """
                    INSERT INTO chat_start_idempotency (user_id, idem_key, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id, idem_key) DO UPDATE SET expires_at=excluded.expires_at
                    WHERE chat_start_idempotency.expires_at <= ?
                    RETURNING expires_at
                    """,
                    (user_id, key, expires_at, int(now_ts)),
                ).fetchone()
                conn.commit()
                return row

        return self._with_retry(_claim) is not None

    def release_idempotency_key(self, user_id: str, key: str) -> None:
        def _delete() -> None:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM chat_start_idempotency WHERE user_id = ? AND idem_key = ?",
                    (user_id, key),
                )
                conn.commit()

        self._with_retry(_delete)

    def prune_expired_idempotency(self, now_ts: int) -> int:
        def _delete() -> int:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM chat_start_idempotency WHERE expires_at <= ?",
                    (int(now_ts),),
                )
                conn.commit()
                return int(cursor.rowcount or 0)

        return self._with_retry(_delete)
