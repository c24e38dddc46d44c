"""Account/credit store abstraction.

Credit consumption and duplicate suppression rely on the atomic primitives of
the backing store, not on in-process locks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from tutorchat.core.models import MemberAccount


class AccountStore(ABC):
    @abstractmethod
    def get_account(self, user_id: str) -> MemberAccount | None:
        pass

    @abstractmethod
    def upsert_account(
        self,
        *,
        user_id: str,
        membership_name: str | None,
        features: set[str] | frozenset[str],
        expires_at: datetime | None,
        chat_credits: int,
    ) -> MemberAccount:
        pass

    @abstractmethod
    def consume_credit(self, user_id: str) -> int | None:
        """Atomically decrement the balance if it is positive.

        Returns the new balance, or None when nothing was decremented.
        """
        pass

    @abstractmethod
    def claim_idempotency_key(self, user_id: str, key: str, ttl_seconds: int, now_ts: int) -> bool:
        """Insert the dedup record unless a live one exists. True when inserted."""
        pass

    @abstractmethod
    def release_idempotency_key(self, user_id: str, key: str) -> None:
        pass

    @abstractmethod
    def prune_expired_idempotency(self, now_ts: int) -> int:
        pass
