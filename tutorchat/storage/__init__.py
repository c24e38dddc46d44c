"""Storage backend selection helpers."""

from __future__ import annotations

from tutorchat.config.settings import settings
from tutorchat.storage.kv import AccountStore
from tutorchat.storage.postgres_store import PostgresAccountStore
from tutorchat.storage.redis_store import RedisAccountStore
from tutorchat.storage.sqlite_store import SqliteAccountStore


def create_store() -> AccountStore:
    backend = settings.storage_backend.strip().lower()
    if backend == "redis":
        return RedisAccountStore(redis_url=settings.redis_url, key_prefix=settings.redis_key_prefix)
    if backend in {"postgres", "postgresql"}:
        return PostgresAccountStore(
            dsn=settings.postgres_dsn,
            schema=settings.postgres_schema,
        )
    return SqliteAccountStore(settings.sqlite_db_path)
