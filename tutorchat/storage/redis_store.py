"""Redis-backed account and idempotency store."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from tutorchat.core.models import MemberAccount
from tutorchat.storage.kv import AccountStore
from tutorchat.storage.sqlite_store import from_epoch, join_features, split_features, to_epoch
from tutorchat.util.logger import get_logger

try:
    import redis
except Exception:  # pragma: no cover - optional dependency
    redis = None

logger = get_logger("storage.redis")

_WATCH_ATTEMPTS = 20


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(_to_str(value))
    except (TypeError, ValueError):
        return default


class RedisAccountStore(AccountStore):
    def __init__(self, *, redis_url: str, key_prefix: str = "tutorchat", client: Any = None) -> None:
        if client is None:
            if redis is None:  # pragma: no cover - depends on optional package
                raise RuntimeError("redis package is not installed, cannot use RedisAccountStore")
            client = redis.Redis.from_url(redis_url, decode_responses=False)
        self.client = client
        self.key_prefix = key_prefix.strip() or "tutorchat"

    def _account_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:account:{user_id}"

    def _idempotency_key(self, user_id: str, key: str) -> str:
        return f"{self.key_prefix}:chat_start:{user_id}:{key}"

    def get_account(self, user_id: str) -> MemberAccount | None:
        raw = self.client.hgetall(self._account_key(user_id))
        if not raw:
            return None
        data = {_to_str(k): _to_str(v) for k, v in raw.items()}
        expires_at = data.get("expires_at") or ""
        return MemberAccount(
            user_id=user_id,
            membership_name=data.get("membership_name") or None,
            features=split_features(data.get("features")),
            expires_at=from_epoch(int(expires_at)) if expires_at else None,
            chat_credits=max(0, _to_int(data.get("chat_credits"))),
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
        epoch = to_epoch(expires_at)
        mapping = {
            "membership_name": membership_name or "",
            "features": join_features(features),
            "expires_at": "" if epoch is None else str(epoch),
            "chat_credits": str(max(0, int(chat_credits))),
        }
        self.client.hset(self._account_key(user_id), mapping=mapping)
        account = self.get_account(user_id)
        assert account is not None
        return account

    def consume_credit(self, user_id: str) -> int | None:
        key = self._account_key(user_id)
        for _ in range(_WATCH_ATTEMPTS):
            pipe = self.client.pipeline()
            try:
                pipe.watch(key)
                current = _to_int(pipe.hget(key, "chat_credits"))
                if current <= 0:
                    return None
                pipe.multi()
                pipe.hincrby(key, "chat_credits", -1)
                result = pipe.execute()
                return int(result[0])
            except redis.WatchError:
                continue
            finally:
                pipe.reset()
        logger.error("credit decrement kept conflicting user_id=%s attempts=%d", user_id, _WATCH_ATTEMPTS)
        raise RuntimeError("credit decrement could not be applied")

    def claim_idempotency_key(self, user_id: str, key: str, ttl_seconds: int, now_ts: int) -> bool:
        ttl = max(1, int(ttl_seconds))
        stored = self.client.set(
            self._idempotency_key(user_id, key),
            str(int(now_ts) + ttl),
            nx=True,
            ex=ttl,
        )
        return bool(stored)

    def release_idempotency_key(self, user_id: str, key: str) -> None:
        self.client.delete(self._idempotency_key(user_id, key))

    def prune_expired_idempotency(self, now_ts: int) -> int:
        # dedup keys carry their own EX and are evicted by redis
        return 0
