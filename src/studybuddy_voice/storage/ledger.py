"""
Atomic usage ledger for premium speech characters.

The only writer of ``characters_used``. The entitlement predicate and the
increment are a single conditional UPDATE executed by the store, so two
concurrent reservations for the same student can never both be granted when
only one of them fits the remaining quota. No lock is held in Python.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import LedgerUnavailableError
from ..models import Plan, ReserveResult, RouteReason, Subscription
from .database import SubscriptionStore, subscriptions, utc, utcnow

logger = logging.getLogger("studybuddy-voice.storage.ledger")


def denial_reason(sub: Optional[Subscription], now: datetime) -> RouteReason:
    """Explain why a reservation against ``sub`` was not granted."""
    if sub is None:
        return RouteReason.NO_SUBSCRIPTION
    if sub.plan != Plan.PRO:
        return RouteReason.BASIC_PLAN
    if not sub.active or (sub.ends_at is not None and sub.ends_at <= now):
        return RouteReason.SUBSCRIPTION_INACTIVE
    return RouteReason.QUOTA_EXHAUSTED


class UsageLedger:
    """Check-and-reserve accounting of premium characters.

    Usage:
        ledger = UsageLedger(store)
        result = ledger.check_and_reserve("student-1", 120)
        if result.granted:
            ...
    """

    def __init__(self, store: SubscriptionStore) -> None:
        self.store = store

    def check_and_reserve(
        self,
        student_id: str,
        character_count: int,
        now: Optional[datetime] = None,
    ) -> ReserveResult:
        """Atomically commit ``character_count`` premium characters if entitled.

        Args:
            student_id: Verified student identifier.
            character_count: Characters about to be voiced; must be positive.
            now: Evaluation time for the term check (defaults to current UTC).

        Returns:
            ReserveResult; a denial leaves stored usage untouched.

        Raises:
            ValueError: If character_count is not positive.
            LedgerUnavailableError: If the store cannot be reached.
        """
        if character_count <= 0:
            raise ValueError(f"character_count must be positive, got {character_count}")

        now = utc(now) or utcnow()
        c = subscriptions.c
        stmt = (
            update(subscriptions)
            .where(
                c.student_id == student_id,
                c.plan == Plan.PRO.value,
                c.active.is_(True),
                or_(c.ends_at.is_(None), c.ends_at > now),
                c.characters_used + character_count <= c.characters_limit,
            )
            .values(
                characters_used=c.characters_used + character_count,
                updated_at=now,
            )
        )

        try:
            with self.store.transaction() as conn:
                granted = conn.execute(stmt).rowcount == 1
                sub = self.store.get_subscription(conn, student_id)
        except SQLAlchemyError as exc:
            logger.error("Ledger reserve failed for %s: %s", student_id, exc)
            raise LedgerUnavailableError(
                "Usage ledger unavailable",
                details={"student_id": student_id, "error": str(exc)},
            ) from exc

        if granted:
            logger.info(
                "Reserved %d chars for %s (%d/%d)",
                character_count, student_id, sub.characters_used, sub.characters_limit,
            )
            return ReserveResult(
                granted=True,
                characters_used=sub.characters_used,
                characters_limit=sub.characters_limit,
            )

        reason = denial_reason(sub, now)
        logger.info("Denied %d chars for %s: %s", character_count, student_id, reason.value)
        return ReserveResult(
            granted=False,
            characters_used=sub.characters_used if sub else 0,
            characters_limit=sub.characters_limit if sub else 0,
            reason=reason,
        )

    def get_usage(self, student_id: str) -> Optional[Subscription]:
        """Current subscription row, or None if the student has none."""
        try:
            with self.store.transaction() as conn:
                return self.store.get_subscription(conn, student_id)
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(
                "Usage ledger unavailable",
                details={"student_id": student_id, "error": str(exc)},
            ) from exc

    def reset_usage(self, student_id: str, now: Optional[datetime] = None) -> bool:
        """Explicit operator reset of the billing cycle usage.

        Returns:
            True if a subscription was reset.
        """
        try:
            with self.store.transaction() as conn:
                changed = self.store.update_subscription(
                    conn, student_id, now=now, characters_used=0
                )
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(
                "Usage ledger unavailable",
                details={"student_id": student_id, "error": str(exc)},
            ) from exc
        if changed:
            logger.info("Usage reset for %s", student_id)
        return changed == 1
