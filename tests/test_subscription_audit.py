"""
Duplicate active subscription audit CLI.
"""

from datetime import datetime, timedelta, timezone

from meterproxy.services.subscription_reconciler import EventOutcome
from meterproxy.scripts.subscription_audit import (
    EXIT_DUPLICATES,
    EXIT_OK,
    find_duplicate_active,
    run_check,
    run_dedupe,
)

NOW = datetime.now(timezone.utc)


def make_duplicates(make_subscription, user_id):
    older = make_subscription(
        user_id, quota=10_000, used=7_000, period_end=NOW + timedelta(days=5), stripe_subscription_id="sub_old"
    )
    newer = make_subscription(
        user_id, quota=50_000, used=100, period_end=NOW + timedelta(days=30), stripe_subscription_id="sub_new", tier="pro"
    )
    return older, newer


class TestFindDuplicates:
    def test_none(self, database, user, make_subscription):
        make_subscription(user.id)
        assert find_duplicate_active(database) == {}

    def test_groups_latest_first(self, database, user, make_subscription):
        older, newer = make_duplicates(make_subscription, user.id)
        groups = find_duplicate_active(database)
        assert [s.id for s in groups[user.id]] == [newer.id, older.id]

    def test_ignores_canceled(self, database, user, make_subscription):
        make_subscription(user.id, stripe_subscription_id="sub_a")
        make_subscription(user.id, stripe_subscription_id="sub_b", status="canceled")
        assert find_duplicate_active(database) == {}


class TestCheck:
    def test_clean(self, database, capsys):
        assert run_check(database) == EXIT_OK

    def test_duplicates(self, database, user, make_subscription, capsys):
        make_duplicates(make_subscription, user.id)
        assert run_check(database) == EXIT_DUPLICATES
        assert "sub_old" in capsys.readouterr().out


class TestDedupe:
    def test_dry_run_writes_nothing(self, database, store, user, make_subscription, capsys):
        older, newer = make_duplicates(make_subscription, user.id)
        assert run_dedupe(database, dry_run=True) == EXIT_OK
        assert store.get(older.id).status == "active"
        assert store.get(newer.id).used == 100

    def test_merges_into_latest(self, database, store, user, make_subscription, capsys):
        older, newer = make_duplicates(make_subscription, user.id)
        assert run_dedupe(database) == EXIT_OK

        kept = store.get(newer.id)
        assert kept.status == "active"
        assert kept.used == 7_000
        assert kept.quota == 50_000
        assert store.get(older.id).status == "canceled"
        assert run_check(database) == EXIT_OK

    def test_canceled_duplicate_not_reactivated_by_stripe(self, database, store, reconciler, user, make_subscription, capsys):
        older, _ = make_duplicates(make_subscription, user.id)
        run_dedupe(database)
        assert store.get(older.id).last_event_at is not None

        event = {
            "id": "evt_after_dedupe",
            "type": "customer.subscription.updated",
            "created": int(NOW.timestamp()),
            "data": {
                "object": {
                    "id": "sub_old",
                    "customer": "cus_alice",
                    "status": "active",
                    "current_period_end": int((NOW + timedelta(days=5)).timestamp()),
                    "items": {"data": [{"price": {"id": "price_basic"}}]},
                }
            },
        }
        assert reconciler.apply_lifecycle_event(event) is EventOutcome.STALE
        assert store.get(older.id).status == "canceled"
