"""
Tests for subscription lifecycle operations.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from studybuddy_voice.exceptions import ConflictError, NotFoundError, ValidationError
from studybuddy_voice.models import Plan, StatusLabel, UpgradeStatus
from studybuddy_voice.plans.operations import DEFAULT_REJECTION_REASON, SubscriptionService
from studybuddy_voice.plans.resolver import PlanResolver
from studybuddy_voice.storage.ledger import UsageLedger


@pytest.fixture
def service(store):
    return SubscriptionService(store, pro_term_days=30)


class TestRegistration:
    def test_register_creates_basic(self, service):
        sub = service.register_student("s1")
        assert sub.plan == Plan.BASIC
        assert sub.characters_used == 0
        assert sub.characters_limit == 150000
        assert sub.active

    def test_register_is_idempotent(self, service, store):
        service.register_student("s1")
        with store.transaction() as conn:
            store.update_subscription(conn, "s1", characters_used=10)
        assert service.register_student("s1").characters_used == 10

    def test_get_subscription_creates_default(self, service):
        sub, latest, status = service.get_subscription("new-student")
        assert sub.plan == Plan.BASIC
        assert latest is None
        assert status.label == StatusLabel.BASIC

    def test_missing_student_id(self, service):
        with pytest.raises(ValidationError):
            service.register_student("")


class TestRequestUpgrade:
    def test_request_is_pending(self, service):
        req = service.request_upgrade("s1")
        assert req.status == UpgradeStatus.PENDING
        assert req.requested_plan == Plan.PRO

    def test_second_pending_rejected(self, service):
        service.request_upgrade("s1")
        with pytest.raises(ConflictError):
            service.request_upgrade("s1")

    def test_already_pro_rejected(self, service, make_subscription):
        make_subscription(student_id="s1", plan=Plan.PRO)
        with pytest.raises(ConflictError):
            service.request_upgrade("s1")

    def test_pending_label(self, service):
        service.request_upgrade("s1")
        _, _, status = service.get_subscription("s1")
        assert status.label == StatusLabel.PENDING_APPROVAL

    def test_store_enforces_single_pending(self, service, store):
        service.request_upgrade("s1")
        with pytest.raises(IntegrityError):
            with store.transaction() as conn:
                store.insert_request(conn, "s1")

    def test_rejected_student_may_request_again(self, service):
        req = service.request_upgrade("s1")
        service.reject_request(req.id)
        assert service.request_upgrade("s1").status == UpgradeStatus.PENDING


class TestApprove:
    def test_approve_grants_pro_term_and_resets_usage(self, service, store, now):
        """Approval: pro, usage 0, term ends 30 days after approval."""
        service.register_student("s1")
        with store.transaction() as conn:
            store.update_subscription(conn, "s1", characters_used=5000)
        req = service.request_upgrade("s1", now=now)

        sub = service.approve_request(req.id, operator_id="school-1", now=now)

        assert sub.plan == Plan.PRO
        assert sub.characters_used == 0
        assert sub.active
        assert sub.started_at == now
        assert sub.ends_at == now + timedelta(days=30)

        with store.transaction() as conn:
            processed = store.get_request(conn, req.id)
        assert processed.status == UpgradeStatus.APPROVED
        assert processed.processed_by == "school-1"
        assert processed.processed_at == now

    def test_approved_student_is_entitled(self, service, store):
        req = service.request_upgrade("s1")
        service.approve_request(req.id)
        status = PlanResolver(store).resolve("s1")
        assert status.can_use_premium
        assert status.label == StatusLabel.ACTIVE_PRO

    def test_approve_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.approve_request(999)

    def test_approve_twice(self, service):
        req = service.request_upgrade("s1")
        service.approve_request(req.id)
        with pytest.raises(ConflictError):
            service.approve_request(req.id)


class TestReject:
    def test_reject_default_reason(self, service):
        req = service.request_upgrade("s1")
        rejected = service.reject_request(req.id)
        assert rejected.status == UpgradeStatus.REJECTED
        assert rejected.rejection_reason == DEFAULT_REJECTION_REASON

    def test_reject_custom_reason(self, service):
        req = service.request_upgrade("s1")
        rejected = service.reject_request(req.id, reason="Fees pending")
        assert rejected.rejection_reason == "Fees pending"

    def test_reject_keeps_basic(self, service):
        req = service.request_upgrade("s1")
        service.reject_request(req.id)
        sub, _, _ = service.get_subscription("s1")
        assert sub.plan == Plan.BASIC


class TestBlock:
    def test_block_with_pending_request(self, service, store):
        """Block: pending request blocked, plan basic, no entitlement."""
        req = service.request_upgrade("s1")

        sub = service.block_student("s1", operator_id="school-1")

        assert sub.plan == Plan.BASIC
        assert sub.ends_at is None
        assert sub.active
        with store.transaction() as conn:
            assert store.get_request(conn, req.id).status == UpgradeStatus.BLOCKED
        status = PlanResolver(store).resolve("s1")
        assert not status.can_use_premium
        assert status.label == StatusLabel.BLOCKED

    def test_block_pro_student_downgrades(self, service, store, make_subscription):
        make_subscription(student_id="s1", plan=Plan.PRO)
        service.block_student("s1")
        assert not UsageLedger(store).check_and_reserve("s1", 5).granted

    def test_blocked_student_may_request_again(self, service):
        service.request_upgrade("s1")
        service.block_student("s1")
        assert service.request_upgrade("s1").status == UpgradeStatus.PENDING


class TestCancelAndExpire:
    def test_cancel_pro(self, service, make_subscription):
        make_subscription(student_id="s1", plan=Plan.PRO, used=77)
        sub = service.cancel_pro("s1")
        assert sub.plan == Plan.BASIC
        assert sub.ends_at is None
        assert sub.active
        assert sub.characters_used == 77

    def test_cancel_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.cancel_pro("ghost")

    def test_expire_only_past_terms(self, service, store, make_subscription, now):
        make_subscription(student_id="old", plan=Plan.PRO, ends_at=now - timedelta(days=1))
        make_subscription(student_id="current", plan=Plan.PRO, ends_at=now + timedelta(days=1))
        make_subscription(student_id="basic", plan=Plan.BASIC)

        expired = service.expire_subscriptions(now=now)

        assert expired == ["old"]
        with store.transaction() as conn:
            assert store.get_subscription(conn, "old").plan == Plan.BASIC
            assert store.get_subscription(conn, "old").ends_at is None
            assert store.get_subscription(conn, "current").plan == Plan.PRO


class TestListRequests:
    def test_filter_by_status(self, service):
        r1 = service.request_upgrade("s1")
        service.request_upgrade("s2")
        service.reject_request(r1.id)
        pending = service.list_requests(UpgradeStatus.PENDING)
        assert [r.student_id for r in pending] == ["s2"]
        assert len(service.list_requests()) == 2
