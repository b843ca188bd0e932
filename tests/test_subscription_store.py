"""
Subscription Store Tests
========================

Versioned compare-and-swap, active-subscription lookup and timezone
round-tripping on SQLite.
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from meterproxy.core.errors import MeterProxyError


class TestCompareAndSwap:
    def test_swap_bumps_version(self, store, user, make_subscription):
        sub = make_subscription(user.id)
        assert store.compare_and_swap(sub, dataclasses.replace(sub, used=10)) is True
        after = store.get(sub.id)
        assert after.used == 10
        assert after.version == sub.version + 1

    def test_stale_version_loses(self, store, user, make_subscription):
        sub = make_subscription(user.id)
        assert store.compare_and_swap(sub, dataclasses.replace(sub, used=10))
        assert store.compare_and_swap(sub, dataclasses.replace(sub, used=99)) is False
        assert store.get(sub.id).used == 10

    def test_refuses_cross_row_swap(self, store, user, make_subscription):
        a = make_subscription(user.id, stripe_subscription_id="sub_a")
        b = make_subscription(user.id, stripe_subscription_id="sub_b")
        with pytest.raises(ValueError):
            store.compare_and_swap(a, b)


class TestUpdateWithRetry:
    def test_applies_mutation(self, store, user, make_subscription):
        sub = make_subscription(user.id, used=5)
        updated = store.update_with_retry(sub.id, lambda s: dataclasses.replace(s, used=s.used + 1))
        assert updated.used == 6
        assert updated.version == sub.version + 1
        assert store.get(sub.id) == updated

    def test_noop_mutation_skips_write(self, store, user, make_subscription):
        sub = make_subscription(user.id)
        assert store.update_with_retry(sub.id, lambda s: s) == sub
        assert store.get(sub.id).version == sub.version

    def test_missing_subscription_returns_none(self, store):
        assert store.update_with_retry("nope", lambda s: s) is None

    def test_exhausted_retries_raise(self, store, user, make_subscription):
        sub = make_subscription(user.id)
        store.compare_and_swap = lambda before, after, session=None: False
        with pytest.raises(MeterProxyError) as exc_info:
            store.update_with_retry(sub.id, lambda s: dataclasses.replace(s, used=1), max_attempts=2)
        assert exc_info.value.code == "MPX-DB-001"


class TestLookup:
    def test_find_active_prefers_latest_period(self, store, user, make_subscription):
        now = datetime.now(timezone.utc)
        make_subscription(user.id, stripe_subscription_id="sub_old", period_end=now + timedelta(days=3))
        newest = make_subscription(user.id, stripe_subscription_id="sub_new", period_end=now + timedelta(days=30))
        make_subscription(user.id, stripe_subscription_id="sub_gone", status="canceled", period_end=now + timedelta(days=90))

        assert store.find_active_for_user(user.id).id == newest.id

    def test_find_active_none(self, store, user):
        assert store.find_active_for_user(user.id) is None

    def test_get_by_external_id(self, store, user, make_subscription):
        sub = make_subscription(user.id, stripe_subscription_id="sub_x")
        assert store.get_by_external_id("sub_x").id == sub.id
        assert store.get_by_external_id("sub_missing") is None

    def test_period_end_round_trips_as_utc(self, store, user, make_subscription):
        end = datetime(2026, 5, 17, 8, 30, tzinfo=timezone.utc)
        sub = make_subscription(user.id, period_end=end)
        assert store.get(sub.id).current_period_end == end
        assert store.get(sub.id).current_period_end.tzinfo is not None

    def test_external_id_is_unique(self, store, user, make_subscription):
        make_subscription(user.id, stripe_subscription_id="sub_dup")
        with pytest.raises(IntegrityError):
            make_subscription(user.id, stripe_subscription_id="sub_dup")


class TestUsageRecords:
    def test_append_and_list_newest_first(self, store, user, make_subscription):
        sub = make_subscription(user.id)
        for i in range(3):
            store.append_usage(user_id=user.id, subscription_id=sub.id, request_id=f"r{i}", units=i + 1)
        records = store.list_usage(user.id)
        assert [r.request_id for r in records] == ["r2", "r1", "r0"]
        assert store.list_usage(user.id, limit=1)[0].units == 3
