"""Seed demo accounts: ``python -m tutorchat.seed``."""

from __future__ import annotations

import argparse
from datetime import datetime, timezone

from tutorchat.core.identity import issue_token
from tutorchat.core.membership_policy import TIERS, coupon_count_for
from tutorchat.core.models import MemberAccount
from tutorchat.storage import create_store
from tutorchat.storage.kv import AccountStore
from tutorchat.util.logger import logger

DEMO_ACCOUNTS: tuple[tuple[str, str | None], ...] = (
    ("user1", "basic"),
    ("user2", "premium"),
    ("user3", "trial"),
    ("user4", None),
)


def seed_accounts(store: AccountStore, *, now: datetime | None = None) -> list[MemberAccount]:
    current = now or datetime.now(tz=timezone.utc)
    seeded: list[MemberAccount] = []
    for user_id, tier_name in DEMO_ACCOUNTS:
        tier = TIERS.get(tier_name) if tier_name else None
        account = store.upsert_account(
            user_id=user_id,
            membership_name=tier.name if tier else None,
            features=tier.features if tier else frozenset(),
            expires_at=tier.expires_at(current) if tier else None,
            chat_credits=coupon_count_for(tier.name) if tier else 0,
        )
        logger.info(
            "seeded account user_id=%s membership=%s chat_credits=%s",
            account.user_id,
            account.membership_name,
            account.chat_credits,
        )
        seeded.append(account)
    return seeded


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo membership accounts into the configured store.")
    parser.add_argument(
        "--print-tokens",
        action="store_true",
        help="Print a bearer token for every seeded account.",
    )
    args = parser.parse_args()

    accounts = seed_accounts(create_store())
    for account in accounts:
        line = f"{account.user_id}\t{account.membership_name or '-'}\t{account.chat_credits}"
        if args.print_tokens:
            line += f"\t{issue_token(account.user_id)}"
        print(line)


if __name__ == "__main__":
    main()
