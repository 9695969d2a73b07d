"""Plan entitlement and subscription lifecycle."""

from .operations import SubscriptionService
from .resolver import PlanResolver, compute_plan_status, status_message

__all__ = ["PlanResolver", "SubscriptionService", "compute_plan_status", "status_message"]
