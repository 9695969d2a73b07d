"""
Student and operator subscription actions.

Upgrade flow: a student files a pending request; a school operator approves
it (30-day pro term, usage reset), rejects it, or blocks the student. Every
downgrade writes the same canonical basic row: plan basic, no end date,
active.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import Plan, PlanStatus, Subscription, UpgradeRequest, UpgradeStatus
from ..storage.database import SubscriptionStore, utc, utcnow
from .resolver import compute_plan_status

logger = logging.getLogger("studybuddy-voice.plans.operations")

DEFAULT_REJECTION_REASON = "Request rejected by school"


class SubscriptionService:
    """Subscription lifecycle operations against a SubscriptionStore.

    All methods accept ``now`` so terms and expiry are testable with a fixed
    clock.
    """

    def __init__(self, store: SubscriptionStore, pro_term_days: int = 30) -> None:
        self.store = store
        self.pro_term_days = pro_term_days

    def _basic_values(self) -> dict[str, Any]:
        return {"plan": Plan.BASIC, "ends_at": None, "active": True}

    # ------------------------------------------------------------------
    # Student actions
    # ------------------------------------------------------------------

    def register_student(self, student_id: str, now: Optional[datetime] = None) -> Subscription:
        """Create the basic subscription of a newly registered student (idempotent)."""
        _require(student_id, "student_id")
        with self.store.transaction() as conn:
            return self.store.ensure_subscription(conn, student_id, now)

    def get_subscription(
        self,
        student_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[Subscription, Optional[UpgradeRequest], PlanStatus]:
        """Subscription, latest request and derived status; creates a basic row if missing."""
        _require(student_id, "student_id")
        with self.store.transaction() as conn:
            sub = self.store.ensure_subscription(conn, student_id, now)
            latest = self.store.latest_request(conn, student_id)
        return sub, latest, compute_plan_status(student_id, sub, latest, now)

    def request_upgrade(self, student_id: str, now: Optional[datetime] = None) -> UpgradeRequest:
        """File a pending pro upgrade request.

        Raises:
            ConflictError: If a request is already pending or the plan is already pro.
        """
        _require(student_id, "student_id")
        try:
            with self.store.transaction() as conn:
                sub = self.store.ensure_subscription(conn, student_id, now)
                if self.store.pending_request(conn, student_id) is not None:
                    raise ConflictError("Upgrade request already pending")
                if sub.plan == Plan.PRO:
                    raise ConflictError("Already on Pro plan")
                request = self.store.insert_request(conn, student_id, now)
        except IntegrityError as exc:
            # A concurrent request won the partial unique index
            raise ConflictError("Upgrade request already pending") from exc

        logger.info("Upgrade request %s filed by %s", request.id, student_id)
        return request

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def approve_request(
        self,
        request_id: int,
        operator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Approve a pending request: pro for the configured term, usage reset to 0.

        Raises:
            NotFoundError: If the request does not exist.
            ConflictError: If the request is not pending.
        """
        now = utc(now) or utcnow()
        with self.store.transaction() as conn:
            request = self._pending(conn, request_id)
            self.store.ensure_subscription(conn, request.student_id, now)
            self.store.update_subscription(
                conn,
                request.student_id,
                now=now,
                plan=Plan.PRO,
                started_at=now,
                ends_at=now + timedelta(days=self.pro_term_days),
                characters_used=0,
                active=True,
            )
            self.store.update_request(
                conn,
                request_id,
                status=UpgradeStatus.APPROVED,
                processed_at=now,
                processed_by=operator_id,
            )
            sub = self.store.get_subscription(conn, request.student_id)

        logger.info("Request %s approved: %s is pro until %s", request_id, sub.student_id, sub.ends_at)
        return sub

    def reject_request(
        self,
        request_id: int,
        reason: Optional[str] = None,
        operator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UpgradeRequest:
        now = utc(now) or utcnow()
        with self.store.transaction() as conn:
            self._pending(conn, request_id)
            self.store.update_request(
                conn,
                request_id,
                status=UpgradeStatus.REJECTED,
                processed_at=now,
                processed_by=operator_id,
                rejection_reason=reason or DEFAULT_REJECTION_REASON,
            )
            request = self.store.get_request(conn, request_id)
        logger.info("Request %s rejected", request_id)
        return request

    def block_student(
        self,
        student_id: str,
        operator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Block pending requests and force the student to basic."""
        _require(student_id, "student_id")
        now = utc(now) or utcnow()
        with self.store.transaction() as conn:
            self.store.ensure_subscription(conn, student_id, now)
            blocked = self.store.block_pending_requests(conn, student_id, operator_id, now)
            self.store.update_subscription(conn, student_id, now=now, **self._basic_values())
            sub = self.store.get_subscription(conn, student_id)
        logger.info("Student %s blocked (%d pending requests)", student_id, blocked)
        return sub

    def cancel_pro(
        self,
        student_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        _require(student_id, "student_id")
        with self.store.transaction() as conn:
            if self.store.get_subscription(conn, student_id) is None:
                raise NotFoundError("Subscription not found")
            self.store.update_subscription(conn, student_id, now=now, **self._basic_values())
            sub = self.store.get_subscription(conn, student_id)
        logger.info("Pro cancelled for %s", student_id)
        return sub

    def expire_subscriptions(self, now: Optional[datetime] = None) -> list[str]:
        """Downgrade every pro subscription whose term ended.

        Returns:
            Student ids that were downgraded.
        """
        now = utc(now) or utcnow()
        expired: list[str] = []
        with self.store.transaction() as conn:
            for sub in self.store.list_subscriptions(conn, Plan.PRO):
                if sub.ends_at is not None and sub.ends_at <= now:
                    self.store.update_subscription(
                        conn, sub.student_id, now=now, **self._basic_values()
                    )
                    expired.append(sub.student_id)
        if expired:
            logger.info("Expired %d pro subscriptions", len(expired))
        return expired

    def list_requests(self, status: Optional[UpgradeStatus] = None) -> list[UpgradeRequest]:
        with self.store.transaction() as conn:
            return self.store.list_requests(conn, status)

    def _pending(self, conn, request_id: int) -> UpgradeRequest:
        request = self.store.get_request(conn, request_id)
        if request is None:
            raise NotFoundError("Request not found", details={"request_id": request_id})
        if request.status != UpgradeStatus.PENDING:
            raise ConflictError(
                "Request already processed",
                details={"request_id": request_id, "status": request.status.value},
            )
        return request


def _require(value: Optional[str], name: str) -> None:
    if not value:
        raise ValidationError(f"{name} is required")
