"""
Tests for the atomic usage ledger.
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from studybuddy_voice.exceptions import LedgerUnavailableError
from studybuddy_voice.models import Plan, RouteReason
from studybuddy_voice.storage.database import SubscriptionStore
from studybuddy_voice.storage.ledger import UsageLedger


@pytest.fixture
def ledger(store):
    return UsageLedger(store)


class TestCheckAndReserve:
    def test_grant_increments_exactly(self, ledger, make_subscription):
        make_subscription(used=0)
        result = ledger.check_and_reserve("student-1", 5)
        assert result.granted
        assert result.characters_used == 5
        assert result.remaining == 149995
        assert result.reason is None
        assert ledger.get_usage("student-1").characters_used == 5

    def test_grants_accumulate(self, ledger, make_subscription):
        make_subscription(used=100)
        ledger.check_and_reserve("student-1", 50)
        result = ledger.check_and_reserve("student-1", 25)
        assert result.characters_used == 175

    def test_exact_fit_is_granted(self, ledger, make_subscription):
        make_subscription(used=149990)
        result = ledger.check_and_reserve("student-1", 10)
        assert result.granted
        assert result.remaining == 0

    def test_over_quota_denied_and_unchanged(self, ledger, make_subscription):
        make_subscription(used=149995)
        result = ledger.check_and_reserve("student-1", 10)
        assert not result.granted
        assert result.reason == RouteReason.QUOTA_EXHAUSTED
        assert result.characters_used == 149995
        assert ledger.get_usage("student-1").characters_used == 149995

    def test_basic_plan_denied(self, ledger, make_subscription):
        make_subscription(plan=Plan.BASIC)
        result = ledger.check_and_reserve("student-1", 5)
        assert not result.granted
        assert result.reason == RouteReason.BASIC_PLAN
        assert ledger.get_usage("student-1").characters_used == 0

    def test_inactive_pro_denied(self, ledger, make_subscription):
        make_subscription(active=False)
        result = ledger.check_and_reserve("student-1", 5)
        assert not result.granted
        assert result.reason == RouteReason.SUBSCRIPTION_INACTIVE

    def test_expired_pro_denied(self, ledger, make_subscription, now):
        make_subscription(ends_at=now - timedelta(seconds=1))
        result = ledger.check_and_reserve("student-1", 5, now=now)
        assert not result.granted
        assert result.reason == RouteReason.SUBSCRIPTION_INACTIVE

    def test_term_end_is_exclusive(self, ledger, make_subscription, now):
        make_subscription(ends_at=now)
        assert not ledger.check_and_reserve("student-1", 5, now=now).granted
        assert ledger.check_and_reserve("student-1", 5, now=now - timedelta(seconds=1)).granted

    def test_pro_without_end_date(self, ledger, store, make_subscription):
        make_subscription()
        with store.transaction() as conn:
            store.update_subscription(conn, "student-1", ends_at=None)
        assert ledger.check_and_reserve("student-1", 5).granted

    def test_unknown_student_denied(self, ledger):
        result = ledger.check_and_reserve("ghost", 5)
        assert not result.granted
        assert result.reason == RouteReason.NO_SUBSCRIPTION
        assert result.characters_limit == 0

    @pytest.mark.parametrize("count", [0, -1])
    def test_non_positive_count_rejected(self, ledger, make_subscription, count):
        make_subscription()
        with pytest.raises(ValueError):
            ledger.check_and_reserve("student-1", count)

    def test_store_failure_raises_ledger_unavailable(self, ledger, store, make_subscription):
        make_subscription()
        with patch.object(
            store, "get_subscription",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            with pytest.raises(LedgerUnavailableError):
                ledger.check_and_reserve("student-1", 5)
        # The failed transaction was rolled back
        assert ledger.get_usage("student-1").characters_used == 0


class TestConcurrency:
    def test_concurrent_reservations_never_exceed_limit(self, tmp_path, now):
        store = SubscriptionStore(f"sqlite:///{tmp_path / 'ledger.db'}")
        store.create_schema()
        with store.transaction() as conn:
            store.ensure_subscription(conn, "student-1", now)
            store.update_subscription(
                conn, "student-1", plan=Plan.PRO, characters_used=149990,
                characters_limit=150000, ends_at=now + timedelta(days=30),
            )
        ledger = UsageLedger(store)

        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def reserve():
            barrier.wait()
            result = ledger.check_and_reserve("student-1", 10)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=reserve) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.granted) == 1
        assert ledger.get_usage("student-1").characters_used == 150000
        store.dispose()

    def test_concurrent_small_reservations_fill_exactly(self, tmp_path, now):
        store = SubscriptionStore(f"sqlite:///{tmp_path / 'fill.db'}")
        store.create_schema()
        with store.transaction() as conn:
            store.ensure_subscription(conn, "student-1", now)
            store.update_subscription(
                conn, "student-1", plan=Plan.PRO, characters_used=0,
                characters_limit=30, ends_at=now + timedelta(days=30),
            )
        ledger = UsageLedger(store)

        granted = []
        lock = threading.Lock()

        def reserve():
            for _ in range(5):
                if ledger.check_and_reserve("student-1", 2).granted:
                    with lock:
                        granted.append(2)

        threads = [threading.Thread(target=reserve) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(granted) == 30
        assert ledger.get_usage("student-1").characters_used == 30
        store.dispose()

    def test_concurrent_oversized_reservations_all_denied(self, tmp_path, now):
        store = SubscriptionStore(f"sqlite:///{tmp_path / 'denied.db'}")
        store.create_schema()
        with store.transaction() as conn:
            store.ensure_subscription(conn, "student-1", now)
            store.update_subscription(
                conn, "student-1", plan=Plan.PRO, characters_used=149995,
                characters_limit=150000, ends_at=now + timedelta(days=30),
            )
        ledger = UsageLedger(store)

        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def reserve():
            barrier.wait()
            result = ledger.check_and_reserve("student-1", 6)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=reserve) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 2
        assert not any(r.granted for r in results)
        assert all(r.reason == RouteReason.QUOTA_EXHAUSTED for r in results)
        assert ledger.get_usage("student-1").characters_used == 149995
        store.dispose()


class TestResetUsage:
    def test_reset(self, ledger, make_subscription):
        make_subscription(used=1234)
        assert ledger.reset_usage("student-1") is True
        assert ledger.get_usage("student-1").characters_used == 0

    def test_reset_unknown_student(self, ledger):
        assert ledger.reset_usage("ghost") is False
