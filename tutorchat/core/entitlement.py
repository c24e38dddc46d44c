"""
Entitlement gate: membership/feature checks and chat credit consumption.

Credit arithmetic is delegated to the store's atomic primitives, so the gate
is safe to call from any number of concurrent requests or worker threads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from tutorchat.config.settings import settings
from tutorchat.core.errors import EligibilityError, NotFoundError
from tutorchat.core.models import MemberAccount, StartResult
from tutorchat.storage.kv import AccountStore
from tutorchat.util.logger import get_logger

logger = get_logger("entitlement")

STARTED_MESSAGE = "Chat session started."
ALREADY_STARTED_MESSAGE = "Chat session already started."
NO_FEATURE_MESSAGE = "A membership that includes chat is required."
NO_CREDITS_MESSAGE = "No chat coupons left. Please purchase a membership."


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class EntitlementGate:
    def __init__(
        self,
        store: AccountStore,
        *,
        feature: str | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.feature = feature or settings.chat_feature_name
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else settings.idempotency_ttl_seconds)
        self._clock = clock

    def _load(self, user_id: str) -> MemberAccount:
        account = self.store.get_account(user_id)
        if account is None:
            raise NotFoundError(details=f"user_id={user_id}")
        return account

    def _require_feature(self, account: MemberAccount) -> None:
        if not account.has_feature(self.feature, self._clock()):
            raise EligibilityError(
                NO_FEATURE_MESSAGE,
                kind=EligibilityError.FORBIDDEN,
                details=f"membership={account.membership_name} feature={self.feature}",
            )

    @staticmethod
    def _payment_required(user_id: str) -> EligibilityError:
        return EligibilityError(
            NO_CREDITS_MESSAGE,
            kind=EligibilityError.PAYMENT_REQUIRED,
            details=f"user_id={user_id} remaining=0",
        )

    def start(self, user_id: str, idempotency_key: str | None = None) -> StartResult:
        """Open a chat session, spending one credit unless the key was already used."""
        account = self._load(user_id)
        self._require_feature(account)

        key = (idempotency_key or "").strip() or None
        if key is None:
            remaining = self.store.consume_credit(user_id)
            if remaining is None:
                raise self._payment_required(user_id)
            logger.info("chat start user_id=%s remaining=%s keyed=false", user_id, remaining)
            return StartResult(message=STARTED_MESSAGE, remaining_chat_coupons=remaining)

        now_ts = int(self._clock().timestamp())
        if not self.store.claim_idempotency_key(user_id, key, self.ttl_seconds, now_ts):
            current = self.remaining(user_id)
            logger.info("chat start duplicate ignored user_id=%s key=%s remaining=%s", user_id, key[:20], current)
            return StartResult(message=ALREADY_STARTED_MESSAGE, remaining_chat_coupons=current, duplicate=True)

        try:
            remaining = self.store.consume_credit(user_id)
        except Exception:
            logger.warning("chat start failed after claim user_id=%s key=%s, releasing key", user_id, key[:20])
            self.store.release_idempotency_key(user_id, key)
            raise
        if remaining is None:
            # nothing was spent, so the key stays claimable
            self.store.release_idempotency_key(user_id, key)
            raise self._payment_required(user_id)
        logger.info("chat start user_id=%s remaining=%s keyed=true", user_id, remaining)
        return StartResult(message=STARTED_MESSAGE, remaining_chat_coupons=remaining)

    def check_usage(self, user_id: str) -> MemberAccount:
        account = self._load(user_id)
        self._require_feature(account)
        if account.chat_credits <= 0:
            raise self._payment_required(user_id)
        return account

    def remaining(self, user_id: str) -> int:
        account = self.store.get_account(user_id)
        return max(0, account.chat_credits) if account is not None else 0

    def describe_eligibility(self, user_id: str, feature: str | None) -> dict[str, Any]:
        account = self.store.get_account(user_id)
        if account is None:
            return {"status": "unavailable", "reason": "User not found"}
        if account.membership_name is None:
            return {"status": "unavailable", "reason": "No membership assigned"}
        if not account.membership_active(self._clock()):
            return {"status": "expired", "reason": "Membership has expired"}

        requested = (feature or "").strip()
        if not requested:
            return {"status": "invalid", "reason": "No feature specified"}
        if requested not in account.features:
            return {"status": "unavailable", "reason": "Feature not included in membership"}

        report: dict[str, Any] = {"status": "available", "feature": requested}
        if requested == self.feature:
            remaining = max(0, account.chat_credits)
            report["remaining_chat_coupons"] = remaining
            if remaining <= 0:
                report.update(status="unavailable", reason="No chat coupons available")
        return report
