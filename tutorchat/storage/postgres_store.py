"""PostgreSQL-backed account and idempotency store."""

from __future__ import annotations

import re
from datetime import datetime

from tutorchat.core.models import MemberAccount
from tutorchat.storage.kv import AccountStore
from tutorchat.storage.sqlite_store import from_epoch, join_features, split_features, to_epoch
from tutorchat.util.logger import get_logger

try:
    import psycopg
except Exception:  # pragma: no cover - optional dependency
    psycopg = None

logger = get_logger("storage.postgres")


class PostgresAccountStore(AccountStore):
    def __init__(self, *, dsn: str, schema: str = "public") -> None:
        if psycopg is None:  # pragma: no cover - optional dependency
            raise RuntimeError("psycopg package is not installed, cannot use PostgresAccountStore")
        if not dsn.strip():
            raise RuntimeError("postgres dsn is empty")
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", schema):
            raise RuntimeError("postgres schema contains invalid characters")

        self.dsn = dsn
        self.schema = schema
        self._accounts = f"{schema}.member_account"
        self._idempotency = f"{schema}.chat_start_idempotency"
        self._init_db()

    def _connect(self):
        return psycopg.connect(self.dsn)

    def _init_db(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._accounts} (
                      user_id TEXT PRIMARY KEY,
                      membership_name TEXT,
                      features TEXT NOT NULL DEFAULT '',
                      expires_at BIGINT,
                      chat_credits INTEGER NOT NULL DEFAULT 0 CHECK (chat_credits >= 0)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._idempotency} (
                      user_id TEXT NOT NULL,
                      idem_key TEXT NOT NULL,
                      expires_at BIGINT NOT NULL,
                      PRIMARY KEY (user_id, idem_key)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_chat_start_idempotency_expires_at
                    ON {self._idempotency} (expires_at)
                    """
                )
            conn.commit()
        logger.info("postgres store initialized schema=%s", self.schema)

    def get_account(self, user_id: str) -> MemberAccount | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT user_id, membership_name, features, expires_at, chat_credits
                    FROM {self._accounts} WHERE user_id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
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
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._accounts} (user_id, membership_name, features, expires_at, chat_credits)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET
                      membership_name = EXCLUDED.membership_name,
                      features = EXCLUDED.features,
                      expires_at = EXCLUDED.expires_at,
                      chat_credits = EXCLUDED.chat_credits
                    """,
                    (user_id, membership_name, join_features(features), to_epoch(expires_at), max(0, int(chat_credits))),
                )
            conn.commit()
        account = self.get_account(user_id)
        assert account is not None
        return account

    def consume_credit(self, user_id: str) -> int | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._accounts}
                    SET chat_credits = chat_credits - 1
                    WHERE user_id = %s AND chat_credits > 0
                    RETURNING chat_credits
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
            conn.commit()
        return int(row[0]) if row else None

    def claim_idempotency_key(self, user_id: str, key: str, ttl_seconds: int, now_ts: int) -> bool:
        expires_at = int(now_ts) + max(1, int(ttl_seconds))
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._idempotency} AS current (user_id, idem_key, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, idem_key) DO UPDATE SET expires_at = EXCLUDED.expires_at
                    WHERE current.expires_at <= %s
                    RETURNING expires_at
                    """,
                    (user_id, key, expires_at, int(now_ts)),
                )
                row = cur.fetchone()
            conn.commit()
        return row is not None

    def release_idempotency_key(self, user_id: str, key: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self._idempotency} WHERE user_id = %s AND idem_key = %s",
                    (user_id, key),
                )
            conn.commit()

    def prune_expired_idempotency(self, now_ts: int) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self._idempotency} WHERE expires_at <= %s",
                    (int(now_ts),),
                )
                deleted = int(cur.rowcount or 0)
            conn.commit()
        return deleted
