"""
Plan resolution: the single place entitlement is derived from a subscription.

``compute_plan_status`` is shared by the router, the HTTP service and the
operator views so they always agree on what a subscription allows and how
it is labelled.
"""

import logging
from datetime import datetime
from typing import Optional

from ..models import (
    Plan,
    PlanStatus,
    RouteReason,
    StatusLabel,
    Subscription,
    UpgradeRequest,
    UpgradeStatus,
    UsageCheckResult,
)
from ..storage.database import SubscriptionStore, utc, utcnow

logger = logging.getLogger("studybuddy-voice.plans.resolver")


def compute_plan_status(
    student_id: Optional[str],
    subscription: Optional[Subscription],
    latest_request: Optional[UpgradeRequest] = None,
    now: Optional[datetime] = None,
) -> PlanStatus:
    """Derive entitlement and label from a subscription row.

    Args:
        student_id: Student the status belongs to.
        subscription: The stored subscription, or None if the student has none.
        latest_request: Most recent upgrade request, used for the label only.
        now: Evaluation time (defaults to current UTC).

    Returns:
        PlanStatus; ``can_use_premium`` is true only for an active, unexpired
        pro plan with quota left.
    """
    now = utc(now) or utcnow()

    if subscription is None:
        status = PlanStatus.safe_default(student_id)
        status.label = _request_label(latest_request) or StatusLabel.BASIC
        return status

    remaining = subscription.remaining
    expired = subscription.ends_at is not None and subscription.ends_at <= now
    is_pro = subscription.plan == Plan.PRO
    can_use_premium = (
        is_pro
        and subscription.active
        and not expired
        and subscription.characters_used < subscription.characters_limit
    )

    # Request state outranks the basic label; pro state outranks requests
    if is_pro and not subscription.active:
        label = StatusLabel.INACTIVE
    elif is_pro and expired:
        label = StatusLabel.EXPIRED
    elif is_pro and remaining <= 0:
        label = StatusLabel.LIMIT_REACHED
    elif is_pro:
        label = StatusLabel.ACTIVE_PRO
    else:
        label = _request_label(latest_request) or StatusLabel.BASIC

    return PlanStatus(
        student_id=student_id,
        plan=subscription.plan,
        active=subscription.active,
        tts_used=subscription.characters_used,
        tts_limit=subscription.characters_limit,
        tts_remaining=remaining,
        ends_at=subscription.ends_at,
        can_use_premium=can_use_premium,
        label=label,
    )


def _request_label(request: Optional[UpgradeRequest]) -> Optional[StatusLabel]:
    if request is None:
        return None
    if request.status == UpgradeStatus.BLOCKED:
        return StatusLabel.BLOCKED
    if request.status == UpgradeStatus.PENDING:
        return StatusLabel.PENDING_APPROVAL
    return None


def reason_for(status: PlanStatus, character_count: int = 1) -> Optional[RouteReason]:
    """Why ``status`` does not allow ``character_count`` premium characters, or None."""
    if status.plan == Plan.BASIC:
        return RouteReason.BASIC_PLAN
    if status.label in (StatusLabel.INACTIVE, StatusLabel.EXPIRED):
        return RouteReason.SUBSCRIPTION_INACTIVE
    if not status.can_use_premium or status.tts_remaining < character_count:
        return RouteReason.QUOTA_EXHAUSTED
    return None


def status_message(status: PlanStatus, using_premium: bool, low_quota_threshold: int = 10000) -> str:
    """Human-readable line for the voice controls."""
    if status.plan == Plan.BASIC:
        return "Using Web Voice (Basic Plan)"
    if status.label == StatusLabel.EXPIRED:
        return "Pro plan expired - Using Web Voice"
    if status.label == StatusLabel.INACTIVE:
        return "Pro plan inactive - Using Web Voice"
    if not status.can_use_premium:
        return "Voice limit reached - Using Web Voice"
    if status.tts_remaining < low_quota_threshold:
        # Nearest thousand, halves up
        thousands = int(status.tts_remaining / 1000 + 0.5)
        return f"Low voice quota: {thousands}K chars left"
    if using_premium:
        return "Using Premium Voice"
    return "Premium Voice available"


class PlanResolver:
    """Reads subscriptions and turns them into PlanStatus values.

    Fails closed: any store error yields the basic, non-premium default.
    """

    def __init__(self, store: SubscriptionStore) -> None:
        self.store = store

    def resolve(self, student_id: str, now: Optional[datetime] = None) -> PlanStatus:
        try:
            with self.store.transaction() as conn:
                sub = self.store.get_subscription(conn, student_id)
                latest = self.store.latest_request(conn, student_id)
        except Exception as exc:
            logger.warning("Plan lookup failed for %s, using basic: %s", student_id, exc)
            return PlanStatus.safe_default(student_id)
        return compute_plan_status(student_id, sub, latest, now)

    def check(
        self,
        student_id: str,
        character_count: int,
        now: Optional[datetime] = None,
    ) -> UsageCheckResult:
        """Non-committing entitlement check for a planned utterance."""
        status = self.resolve(student_id, now)
        reason = reason_for(status, character_count)
        return UsageCheckResult(
            entitled=reason is None,
            remaining=status.tts_remaining,
            reason=reason,
        )
