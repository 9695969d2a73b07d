"""
Domain models shared by the ledger, the plan resolver, the router and the
HTTP service.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Plan(str, Enum):
    BASIC = "basic"
    PRO = "pro"


class UpgradeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class StatusLabel(str, Enum):
    """Single status label consumed by the router, the UI and operator views."""

    BASIC = "basic"
    PENDING_APPROVAL = "pending_approval"
    BLOCKED = "blocked"
    ACTIVE_PRO = "active_pro"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    INACTIVE = "inactive"

    @property
    def display(self) -> str:
        return _LABEL_DISPLAY[self]


_LABEL_DISPLAY = {
    StatusLabel.BASIC: "Basic",
    StatusLabel.PENDING_APPROVAL: "Pending Approval",
    StatusLabel.BLOCKED: "Blocked",
    StatusLabel.ACTIVE_PRO: "Active Pro",
    StatusLabel.EXPIRED: "Expired",
    StatusLabel.LIMIT_REACHED: "Voice Limit Reached",
    StatusLabel.INACTIVE: "Inactive",
}


class RouteReason(str, Enum):
    """Why an utterance did not (or could not) use the premium backend."""

    NO_IDENTITY = "no_identity"
    PLAN_NOT_LOADED = "plan_not_loaded"
    BASIC_PLAN = "basic_plan"
    QUOTA_EXHAUSTED = "quota_exhausted"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    NO_SUBSCRIPTION = "no_subscription"
    VENDOR_ERROR = "vendor_error"
    PLAYBACK_ERROR = "playback_error"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    FALLBACK_UNAVAILABLE = "fallback_unavailable"
    BOTH_FAILED = "both_failed"


class Subscription(BaseModel):
    """One row of the ``subscriptions`` table."""

    student_id: str
    plan: Plan = Plan.BASIC
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    characters_used: int = Field(default=0, ge=0)
    characters_limit: int = Field(default=150000, ge=0)
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.characters_limit - self.characters_used)


class UpgradeRequest(BaseModel):
    """One row of the ``upgrade_requests`` table."""

    id: int
    student_id: str
    requested_plan: Plan = Plan.PRO
    status: UpgradeStatus = UpgradeStatus.PENDING
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None


class PlanStatus(BaseModel):
    """Derived entitlement view of a student's subscription."""

    student_id: Optional[str] = None
    plan: Plan = Plan.BASIC
    active: bool = True
    tts_used: int = 0
    tts_limit: int = 0
    tts_remaining: int = 0
    ends_at: Optional[datetime] = None
    can_use_premium: bool = False
    label: StatusLabel = StatusLabel.BASIC

    @classmethod
    def safe_default(cls, student_id: Optional[str] = None) -> "PlanStatus":
        """Fail-closed status used when the subscription cannot be read."""
        return cls(student_id=student_id)


class UsageInfo(BaseModel):
    """Read model the UI renders next to the voice controls."""

    plan: Plan = Plan.BASIC
    tts_used: int = 0
    tts_limit: int = 0
    tts_remaining: int = 0
    can_use_premium: bool = False
    using_premium: bool = False

    @classmethod
    def from_status(cls, status: PlanStatus, using_premium: bool = False) -> "UsageInfo":
        return cls(
            plan=status.plan,
            tts_used=status.tts_used,
            tts_limit=status.tts_limit,
            tts_remaining=status.tts_remaining,
            can_use_premium=status.can_use_premium,
            using_premium=using_premium,
        )

    def to_wire(self) -> dict[str, Any]:
        """camelCase payload used by the HTTP service."""
        return {
            "plan": self.plan.value,
            "ttsUsed": self.tts_used,
            "ttsLimit": self.tts_limit,
            "ttsRemaining": self.tts_remaining,
            "canUsePremium": self.can_use_premium,
            "usingPremium": self.using_premium,
        }


class SpeakRequest(BaseModel):
    """A request to voice one tutor response."""

    text: str
    voice_id: Optional[str] = None
    speed: float = Field(default=1.0, ge=0.5, le=2.0)
    language: Optional[str] = None

    @field_validator("speed", mode="before")
    @classmethod
    def clamp_speed(cls, v: Any) -> float:
        if v is None:
            return 1.0
        return min(2.0, max(0.5, float(v)))


@dataclass
class UsageCheckResult:
    """Answer of PlanResolver.check for a planned utterance."""

    entitled: bool
    remaining: int
    reason: Optional[RouteReason] = None


@dataclass
class ReserveResult:
    """Answer of UsageLedger.check_and_reserve.

    Attributes:
        granted: True if the characters were committed.
        characters_used: Usage after the call (post-increment when granted,
            unchanged when denied).
        characters_limit: Quota ceiling of the subscription.
        reason: Denial reason, None when granted.
    """

    granted: bool
    characters_used: int
    characters_limit: int
    reason: Optional[RouteReason] = None

    @property
    def remaining(self) -> int:
        return max(0, self.characters_limit - self.characters_used)
