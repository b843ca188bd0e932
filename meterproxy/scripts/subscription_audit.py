"""
Subscription Audit
==================

Maintenance CLI for users holding more than one active subscription,
which Stripe can produce briefly around plan changes or after a
failed cancellation.

Usage:
    meterproxy-audit check            # exit 2 if duplicates exist
    meterproxy-audit dedupe [--dry-run]

Dedupe keeps the active row with the latest period end, carries over the
larger of the duplicates' usage and quota, and cancels the rest. Rows are
never deleted. The cancellation is local: cancel the extra subscriptions
in Stripe as well. Later Stripe events for a canceled row never
reactivate it.
"""

import argparse
import dataclasses
import logging
import sys
from collections import defaultdict
from typing import Dict, List

from sqlmodel import select

from meterproxy.config import get_settings
from meterproxy.core.database import Database
from meterproxy.models.billing import ACTIVE, CANCELED, Subscription, SubscriptionSnapshot, utcnow
from meterproxy.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DUPLICATES = 2


def find_duplicate_active(database: Database) -> Dict[str, List[SubscriptionSnapshot]]:
    """Active subscriptions grouped by user, for users with more than one.

    Each group is ordered latest period end first.
    """
    with database.session() as session:
        rows = session.exec(
            select(Subscription)
            .where(Subscription.status == ACTIVE)
            .order_by(Subscription.user_id, Subscription.current_period_end.desc())
        ).all()
        by_user: Dict[str, List[SubscriptionSnapshot]] = defaultdict(list)
        for row in rows:
            by_user[row.user_id].append(SubscriptionSnapshot.from_row(row))
    return {user_id: subs for user_id, subs in by_user.items() if len(subs) > 1}


def merge_duplicates(store: SubscriptionStore, subscriptions: List[SubscriptionSnapshot], max_attempts: int = 5) -> SubscriptionSnapshot:
    """Fold one user's duplicate active subscriptions into the latest one."""
    canonical, *extras = subscriptions
    merged_used = max(s.used for s in subscriptions)
    merged_quota = max(s.quota for s in subscriptions)

    kept = store.update_with_retry(
        canonical.id,
        lambda s: dataclasses.replace(s, used=max(s.used, merged_used), quota=max(s.quota, merged_quota)),
        max_attempts,
    )
    for extra in extras:
        # Stamped so older Stripe events for this row are skipped as stale
        store.update_with_retry(
            extra.id,
            lambda s: dataclasses.replace(s, status=CANCELED, last_event_at=utcnow()),
            max_attempts,
        )
        logger.info("Canceled duplicate subscription %s (kept %s)", extra.stripe_subscription_id, canonical.stripe_subscription_id)
    return kept


def _print_groups(groups: Dict[str, List[SubscriptionSnapshot]]) -> None:
    for user_id, subs in groups.items():
        print(f"user {user_id}: {len(subs)} active subscriptions")
        for s in subs:
            print(
                f"  {s.stripe_subscription_id}  tier={s.tier} used={s.used}/{s.quota} "
                f"period_end={s.current_period_end.isoformat()}"
            )


def run_check(database: Database) -> int:
    groups = find_duplicate_active(database)
    if not groups:
        print("No users with more than one active subscription.")
        return EXIT_OK
    _print_groups(groups)
    print(f"\n{len(groups)} user(s) with duplicate active subscriptions. Run `meterproxy-audit dedupe`.", file=sys.stderr)
    return EXIT_DUPLICATES


def run_dedupe(database: Database, dry_run: bool = False, max_attempts: int = 5) -> int:
    groups = find_duplicate_active(database)
    if not groups:
        print("No duplicates found.")
        return EXIT_OK

    _print_groups(groups)
    if dry_run:
        print("\nDry run: no changes written.")
        return EXIT_OK

    store = SubscriptionStore(database)
    for user_id, subs in groups.items():
        kept = merge_duplicates(store, subs, max_attempts)
        print(f"user {user_id}: kept {kept.stripe_subscription_id} (used={kept.used}, quota={kept.quota})")
    print("\nDedupe complete. Re-run `meterproxy-audit check` to confirm.")
    return EXIT_OK


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Audit users with duplicate active subscriptions")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check", help="Report duplicates; exit 2 if any")
    dedupe = sub.add_parser(
        "dedupe",
        help="Merge duplicates into the latest subscription (cancels locally; cancel in Stripe too)",
    )
    dedupe.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args(argv)

    settings = get_settings()
    database = Database(settings.database_url)
    try:
        database.init(run_migrations=settings.run_migrations)
        if args.command == "check":
            return run_check(database)
        return run_dedupe(database, dry_run=args.dry_run, max_attempts=settings.cas_max_attempts)
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())
