"""
Read-side helpers for presenting a billing record.
"""
import math
from datetime import datetime
from typing import Any, Dict, Optional

from subsync.models.billing import LimitBundle, SubscriptionStatus, UserBillingRecord

_SECONDS_PER_DAY = 24 * 60 * 60

_STATUS_MESSAGES = {
    SubscriptionStatus.ACTIVE: "Active",
    SubscriptionStatus.PAST_DUE: "Payment Required",
    SubscriptionStatus.CANCELED: "Canceled",
    SubscriptionStatus.INCOMPLETE: "Setup Incomplete",
}


def trial_days_remaining(record: UserBillingRecord, now: datetime) -> int:
    if record.trial_ends_at is None:
        return 0
    seconds = (record.trial_ends_at - now).total_seconds()
    return max(0, math.ceil(seconds / _SECONDS_PER_DAY))


def is_subscription_active(record: Optional[UserBillingRecord], now: datetime) -> bool:
    """Active, or trialing with the trial still running."""
    if record is None:
        return False
    if record.status is SubscriptionStatus.ACTIVE:
        return True
    if record.status is SubscriptionStatus.TRIALING and record.trial_ends_at is not None:
        return now < record.trial_ends_at
    return False


def status_message(record: Optional[UserBillingRecord], now: datetime) -> str:
    if record is None:
        return "No Subscription"
    if record.status is SubscriptionStatus.TRIALING:
        return f"Trial: {trial_days_remaining(record, now)} days remaining"
    return _STATUS_MESSAGES.get(record.status, "Unknown")


def has_feature_access(limits: Optional[LimitBundle], feature: str) -> bool:
    """
    True if `feature` is enabled or has a positive allowance.

    `max_extinguishers=None` is unlimited and counts as access. Unknown
    feature names never grant access.
    """
    if limits is None or feature not in LimitBundle.model_fields:
        return False
    value = getattr(limits, feature)
    if value is None:
        return feature == "max_extinguishers"
    if isinstance(value, bool):
        return value
    return value > 0


def format_price(amount_cents: Optional[int], interval: str = "month") -> Optional[Dict[str, Any]]:
    if amount_cents is None:
        return None
    dollars = amount_cents / 100
    amount = int(dollars) if dollars.is_integer() else dollars
    return {"amount": amount, "display": f"${amount}/{interval}"}


def summarize(record: Optional[UserBillingRecord], now: datetime) -> Dict[str, Any]:
    """Client-facing status payload for GET /api/billing/status."""
    if record is None:
        return {
            "tier": None,
            "status": None,
            "active": False,
            "message": status_message(None, now),
            "limits": None,
            "current_period_end": None,
            "trial_ends_at": None,
            "has_billing_account": False,
        }
    return {
        "tier": record.tier.value,
        "status": record.status.value,
        "active": is_subscription_active(record, now),
        "message": status_message(record, now),
        "limits": record.limits.model_dump(),
        "current_period_end": record.current_period_end.isoformat() if record.current_period_end else None,
        "trial_ends_at": record.trial_ends_at.isoformat() if record.trial_ends_at else None,
        "has_billing_account": bool(record.external_customer_id),
    }
