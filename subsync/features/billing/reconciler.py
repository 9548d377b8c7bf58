"""
Subscription reconciler.

Turns verified subscription lifecycle events into billing record
transitions:

    trialing -> active -> past_due -> active
                       -> past_due -> canceled
    trialing -> canceled

`canceled` is terminal for a subscription id. Only a new checkout, which
brings a new subscription id, makes the record active again.

Each handler does its provider I/O first, then hands the store a pure
mutation that is re-evaluated against the freshest record on every
compare-and-swap attempt. Events that cannot be tied to a user, or that
refer to a subscription other than the current one, are dropped and logged;
dropping is a normal outcome, not an error.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from subsync.core.logging import log_event
from subsync.features.billing.customers import CustomerResolver, USER_ID_METADATA_KEY
from subsync.features.billing.events import (
    EventKind,
    WebhookEvent,
    subscription_period,
    subscription_price_id,
)
from subsync.features.billing.provider import BillingProvider, BillingProviderError
from subsync.features.billing.store import BillingRecordStore
from subsync.features.billing.tiers import TierCatalog
from subsync.models.billing import SubscriptionStatus, UserBillingRecord


CANCEL_POLICY_PRESERVE = "preserve"
CANCEL_POLICY_DOWNGRADE = "downgrade"

_PROVIDER_STATUS = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Stripe subscription status -> internal status; None if unmapped (e.g. paused)."""
    return _PROVIDER_STATUS.get(status or "")


class ReconcileAction(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DROPPED = "dropped"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    action: ReconcileAction
    user_id: Optional[str] = None
    reason: Optional[str] = None
    record: Optional[UserBillingRecord] = None


@dataclass(frozen=True)
class _Skip:
    reason: str


MutationOutcome = Union[UserBillingRecord, _Skip, None]


class SubscriptionReconciler:
    """Applies webhook events to UserBillingRecords."""

    def __init__(
        self,
        catalog: TierCatalog,
        store: BillingRecordStore,
        provider: BillingProvider,
        resolver: CustomerResolver,
        cancel_policy: str = CANCEL_POLICY_PRESERVE,
    ):
        if cancel_policy not in (CANCEL_POLICY_PRESERVE, CANCEL_POLICY_DOWNGRADE):
            raise ValueError(f"Unknown cancel policy: {cancel_policy!r}")
        self.catalog = catalog
        self.store = store
        self.provider = provider
        self.resolver = resolver
        self.cancel_policy = cancel_policy

    def apply(self, event: WebhookEvent) -> ReconcileResult:
        """
        Reconcile one event.

        Raises:
            TransientError: store or provider unavailable; the delivery
                should be retried
        """
        if event.kind is EventKind.CHECKOUT_COMPLETED:
            return self._checkout_completed(event)
        elif event.kind is EventKind.SUBSCRIPTION_UPDATED:
            return self._subscription_updated(event)
        elif event.kind is EventKind.SUBSCRIPTION_DELETED:
            return self._subscription_deleted(event)
        elif event.kind is EventKind.INVOICE_PAYMENT_SUCCEEDED:
            return self._invoice_payment_succeeded(event)
        elif event.kind is EventKind.INVOICE_PAYMENT_FAILED:
            return self._invoice_payment_failed(event)
        else:
            log_event(
                "info",
                "billing.webhook.unhandled_event_type",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return ReconcileResult(action=ReconcileAction.IGNORED, reason="unhandled_event_type")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _checkout_completed(self, event: WebhookEvent) -> ReconcileResult:
        session = event.payload
        metadata = session.get("metadata") or {}
        user_id = (
            metadata.get(USER_ID_METADATA_KEY)
            or session.get("client_reference_id")
            or self.resolver.resolve_user_id(event.external_customer_id)
        )
        if not user_id:
            return self._drop(event, None, "user_unresolved")

        subscription_id = event.external_subscription_id
        if not subscription_id:
            return self._drop(event, user_id, "no_subscription")

        subscription = self._retrieve_subscription(event, user_id, subscription_id)
        if subscription is None:
            return self._drop(event, user_id, "provider_rejected")
        tier = self.catalog.derive_tier(subscription_price_id(subscription))
        period_start, period_end = subscription_period(subscription)
        customer_id = event.external_customer_id

        def mutate(current: Optional[UserBillingRecord]) -> MutationOutcome:
            if current is not None and current.external_subscription_id == subscription_id \
                    and current.status is SubscriptionStatus.CANCELED:
                return _Skip("subscription_canceled")
            base = current or self.store.new_record(user_id, tier, SubscriptionStatus.ACTIVE)
            return base.model_copy(update={
                "external_customer_id": self._link_customer(base, customer_id),
                "external_subscription_id": subscription_id,
                "tier": tier,
                "status": SubscriptionStatus.ACTIVE,
                "current_period_start": period_start,
                "current_period_end": period_end,
            })

        return self._commit(event, user_id, mutate)

    def _subscription_updated(self, event: WebhookEvent) -> ReconcileResult:
        subscription = event.payload
        user_id = self._resolve_user(event)
        if not user_id:
            return self._drop(event, None, "user_unresolved")

        subscription_id = event.external_subscription_id
        status = map_provider_status(subscription.get("status"))
        if status is None:
            log_event(
                "warning",
                "billing.subscription.unmapped_status",
                user_id=user_id,
                event_id=event.event_id,
                extra={"provider_status": subscription.get("status")},
            )
        tier = self.catalog.derive_tier(subscription_price_id(subscription))
        period_start, period_end = subscription_period(subscription)
        customer_id = event.external_customer_id

        def mutate(current: Optional[UserBillingRecord]) -> MutationOutcome:
            is_current = current is not None and current.external_subscription_id == subscription_id
            if is_current and current.status is SubscriptionStatus.CANCELED:
                return _Skip("subscription_canceled")
            if not is_current:
                # A different subscription supersedes the stored one, unless it is already dead
                if status is None:
                    return _Skip("unmapped_status")
                if status is SubscriptionStatus.CANCELED and current is not None \
                        and current.external_subscription_id is not None:
                    return _Skip("stale_subscription")
            base = current or self.store.new_record(user_id, tier, status)
            return base.model_copy(update={
                "external_customer_id": self._link_customer(base, customer_id),
                "external_subscription_id": subscription_id,
                "tier": tier,
                "status": status or base.status,
                "current_period_start": period_start,
                "current_period_end": period_end,
            })

        return self._commit(event, user_id, mutate)

    def _subscription_deleted(self, event: WebhookEvent) -> ReconcileResult:
        user_id = self._resolve_user(event)
        if not user_id:
            return self._drop(event, None, "user_unresolved")

        subscription_id = event.external_subscription_id
        downgrade = self.cancel_policy == CANCEL_POLICY_DOWNGRADE

        def mutate(current: Optional[UserBillingRecord]) -> MutationOutcome:
            if current is None:
                return _Skip("no_record")
            if current.external_subscription_id not in (None, subscription_id):
                return _Skip("stale_subscription")
            changes: Dict[str, Any] = {
                "status": SubscriptionStatus.CANCELED,
                "external_subscription_id": subscription_id,
            }
            if downgrade:
                changes["tier"] = self.catalog.lowest_tier
            return current.model_copy(update=changes)

        return self._commit(event, user_id, mutate)

    def _invoice_payment_succeeded(self, event: WebhookEvent) -> ReconcileResult:
        user_id = self._resolve_user(event)
        if not user_id:
            return self._drop(event, None, "user_unresolved")

        subscription_id = event.external_subscription_id
        if not subscription_id:
            return self._drop(event, user_id, "no_subscription_reference")

        # Skip the provider round trip for invoices of a superseded subscription
        existing = self.store.get(user_id)
        if existing is None or existing.external_subscription_id != subscription_id:
            return self._drop(event, user_id, "stale_subscription")

        subscription = self._retrieve_subscription(event, user_id, subscription_id)
        if subscription is None:
            return self._drop(event, user_id, "provider_rejected")
        period_start, period_end = subscription_period(subscription)

        def mutate(current: Optional[UserBillingRecord]) -> MutationOutcome:
            if current is None:
                return _Skip("no_record")
            if current.external_subscription_id != subscription_id:
                return _Skip("stale_subscription")
            if current.status is SubscriptionStatus.CANCELED:
                return _Skip("subscription_canceled")
            return current.model_copy(update={
                "current_period_start": period_start,
                "current_period_end": period_end,
            })

        return self._commit(event, user_id, mutate)

    def _invoice_payment_failed(self, event: WebhookEvent) -> ReconcileResult:
        user_id = self._resolve_user(event)
        if not user_id:
            return self._drop(event, None, "user_unresolved")

        subscription_id = event.external_subscription_id

        def mutate(current: Optional[UserBillingRecord]) -> MutationOutcome:
            if current is None:
                return _Skip("no_record")
            if subscription_id and current.external_subscription_id != subscription_id:
                return _Skip("stale_subscription")
            if current.status is SubscriptionStatus.CANCELED:
                return _Skip("subscription_canceled")
            return current.model_copy(update={"status": SubscriptionStatus.PAST_DUE})

        return self._commit(event, user_id, mutate)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_user(self, event: WebhookEvent) -> Optional[str]:
        user_id = self.resolver.resolve_user_id(event.external_customer_id)
        if user_id:
            return user_id
        # Subscriptions created by our checkout carry the tag as well
        return (event.payload.get("metadata") or {}).get(USER_ID_METADATA_KEY)

    def _retrieve_subscription(
        self, event: WebhookEvent, user_id: str, subscription_id: str
    ) -> Optional[Dict[str, Any]]:
        """None when the provider permanently rejects the lookup (deleted or unknown subscription)."""
        try:
            return self.provider.retrieve_subscription(subscription_id)
        except BillingProviderError as e:
            log_event(
                "warning",
                "billing.subscription.retrieve_rejected",
                user_id=user_id,
                event_id=event.event_id,
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            return None

    def _link_customer(self, record: UserBillingRecord, customer_id: Optional[str]) -> Optional[str]:
        if record.external_customer_id and customer_id and record.external_customer_id != customer_id:
            log_event(
                "warning",
                "billing.customer.mismatch",
                user_id=record.user_id,
                extra={"stored": record.external_customer_id, "event": customer_id},
            )
        return record.external_customer_id or customer_id

    def _commit(
        self,
        event: WebhookEvent,
        user_id: str,
        mutate: Callable[[Optional[UserBillingRecord]], MutationOutcome],
    ) -> ReconcileResult:
        skipped: Dict[str, str] = {}

        def guarded(current: Optional[UserBillingRecord]) -> Optional[UserBillingRecord]:
            skipped.clear()
            outcome = mutate(current)
            if isinstance(outcome, _Skip):
                skipped["reason"] = outcome.reason
                return None
            return outcome

        result = self.store.update(user_id, guarded)
        if skipped:
            return self._drop(event, user_id, skipped["reason"])

        action = ReconcileAction.APPLIED if result.changed else ReconcileAction.UNCHANGED
        record = result.record
        log_event(
            "info",
            f"billing.reconcile.{action.value}",
            user_id=user_id,
            event_id=event.event_id,
            event_type=event.event_type,
            extra={
                "tier": record.tier.value if record else None,
                "status": record.status.value if record else None,
                "attempts": result.attempts,
            },
        )
        return ReconcileResult(action=action, user_id=user_id, record=record)

    def _drop(self, event: WebhookEvent, user_id: Optional[str], reason: str) -> ReconcileResult:
        # Logged for manual reconciliation; the provider must not retry these
        log_event(
            "warning",
            "billing.reconcile.dropped",
            user_id=user_id,
            event_id=event.event_id,
            event_type=event.event_type,
            error_code=reason,
            extra={
                "customer_id": event.external_customer_id,
                "subscription_id": event.external_subscription_id,
            },
        )
        return ReconcileResult(action=ReconcileAction.DROPPED, user_id=user_id, reason=reason)
