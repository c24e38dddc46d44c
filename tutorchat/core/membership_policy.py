"""Membership tiers and the chat coupon allotment of each."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic_settings import BaseSettings, SettingsConfigDict


class CouponSettings(BaseSettings):
    """Unprefixed ``COUPON_*`` overrides; unparsable values count as zero."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    coupon_basic: str = "0"
    coupon_premium: str = "30"
    coupon_trial: str = "1"
    coupon_default: str = "0"


def env_int(value: str | int | None) -> int:
    try:
        return int(str(value).strip(), 10)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, slots=True)
class MembershipTier:
    name: str
    features: frozenset[str]
    duration_days: int

    def expires_at(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(tz=timezone.utc)) + timedelta(days=self.duration_days)


TIERS: dict[str, MembershipTier] = {
    "basic": MembershipTier("basic", frozenset({"study"}), 30),
    "premium": MembershipTier("premium", frozenset({"study", "chat", "analysis"}), 60),
    "trial": MembershipTier("trial", frozenset({"chat"}), 7),
}


def coupon_count_for(membership_name: str | None, coupons: CouponSettings | None = None) -> int:
    source = coupons or CouponSettings()
    name = (membership_name or "").strip().lower()
    if name == "basic":
        return env_int(source.coupon_basic)
    if name == "premium":
        return env_int(source.coupon_premium)
    if name == "trial":
        return env_int(source.coupon_trial)
    return env_int(source.coupon_default)
