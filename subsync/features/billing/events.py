"""
Webhook event envelope and Stripe payload accessors.

Stripe moved a few fields between API versions (period bounds onto
subscription items, the invoice's subscription under `parent`); the
accessors here read both shapes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


class EventParseError(ValueError):
    """Verified body is not a usable event envelope."""


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    kind: EventKind
    event_type: str
    external_customer_id: Optional[str]
    external_subscription_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are ids, or expanded objects with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = _id_of(invoice.get("subscription"))
    if sub:
        return sub
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _id_of(details.get("subscription"))


def parse_event(envelope: Dict[str, Any]) -> WebhookEvent:
    """Build a WebhookEvent from a verified Stripe event envelope."""
    if not isinstance(envelope, dict):
        raise EventParseError("Event body must be a JSON object")
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not event_id or not event_type:
        raise EventParseError("Event is missing id or type")

    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise EventParseError("Event data must be an object")
    obj = data.get("object") or {}
    if not isinstance(obj, dict):
        raise EventParseError("Event data.object must be an object")

    kind = EventKind.from_type(event_type)
    customer_id = _id_of(obj.get("customer"))
    if kind in (EventKind.SUBSCRIPTION_UPDATED, EventKind.SUBSCRIPTION_DELETED):
        subscription_id = obj.get("id")
    elif kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED):
        subscription_id = invoice_subscription_id(obj)
    elif kind is EventKind.CHECKOUT_COMPLETED:
        subscription_id = _id_of(obj.get("subscription"))
    else:
        subscription_id = None

    return WebhookEvent(
        event_id=event_id,
        kind=kind,
        event_type=event_type,
        external_customer_id=customer_id,
        external_subscription_id=subscription_id,
        payload=obj,
    )


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = ((subscription.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return _id_of(_first_item(subscription).get("price"))


def _from_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """(current_period_start, current_period_end) as aware UTC datetimes."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        item = _first_item(subscription)
        start = item.get("current_period_start", start)
        end = item.get("current_period_end", end)
    return _from_ts(start), _from_ts(end)
