"""
subsync/models/billing.py

Billing domain models.

A UserBillingRecord is the per-user view of the provider's subscription
lifecycle. Records are immutable values: the store and the reconciler derive
new records with `model_copy(update=...)` rather than mutating in place.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Lowest first. Used for safe-low defaults and ambiguity resolution.
TIER_ORDER = (Tier.BASIC, Tier.PRO, Tier.ENTERPRISE)


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class LimitBundle(BaseModel):
    """
    Feature limits granted by a tier.

    `max_extinguishers=None` means unlimited.
    """
    model_config = ConfigDict(frozen=True)

    max_extinguishers: Optional[int]
    photos_enabled: bool
    max_photos_per_unit: int
    gps_enabled: bool
    advanced_export_enabled: bool
    inspection_history_enabled: bool
    priority_support: bool


class UserBillingRecord(BaseModel):
    """Billing state for one internal user."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    tier: Tier
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    limits: LimitBundle
    version: int = 0
    updated_at: datetime

    def same_state(self, other: "UserBillingRecord") -> bool:
        """Compare billing state, ignoring write bookkeeping (version, updated_at)."""
        ignore = {"version", "updated_at"}
        return self.model_dump(exclude=ignore) == other.model_dump(exclude=ignore)
