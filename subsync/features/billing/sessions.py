"""
Session broker: checkout and customer-portal sessions.

Neither operation mutates subscription state. The billing record only
changes when the resulting webhook arrives.
"""
from dataclasses import dataclass
from typing import Optional

from subsync.core.errors import FailedPreconditionError, ValidationError
from subsync.core.logging import log_event
from subsync.features.billing.customers import CustomerResolver, USER_ID_METADATA_KEY
from subsync.features.billing.provider import BillingProvider
from subsync.features.billing.store import BillingRecordStore
from subsync.features.billing.tiers import TierCatalog


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class PortalResult:
    redirect_url: str


class SessionBroker:
    """Creates provider-hosted sessions on behalf of an authenticated user."""

    def __init__(
        self,
        catalog: TierCatalog,
        store: BillingRecordStore,
        provider: BillingProvider,
        resolver: CustomerResolver,
    ):
        self.catalog = catalog
        self.store = store
        self.provider = provider
        self.resolver = resolver

    def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Start a subscription checkout for `plan_id`.

        Raises:
            ValidationError: unknown plan, or plan not sold through checkout
            TransientError: provider or store unavailable (caller may retry)
        """
        definition = self.catalog.lookup_plan(plan_id) if plan_id else None
        if definition is None:
            raise ValidationError(f"Unknown plan: {plan_id!r}")
        if not definition.purchasable:
            raise ValidationError(f"Plan {definition.tier.value!r} is not available for self-serve checkout")
        if not success_url or not cancel_url:
            raise ValidationError("success_url and cancel_url are required")

        customer_id = self.resolver.find_or_create_external_customer(user_id, email)

        # The metadata tag is the reliable link back to the user when the
        # completion event arrives before the customer index is written.
        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=definition.stripe_price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={USER_ID_METADATA_KEY: user_id, "plan_id": definition.tier.value},
            client_reference_id=user_id,
        )

        log_event(
            "info",
            "billing.checkout.created",
            user_id=user_id,
            extra={"plan_id": definition.tier.value, "session_id": session.session_id},
        )
        return CheckoutResult(session_id=session.session_id, redirect_url=session.url)

    def create_portal_session(self, user_id: str, return_url: str) -> PortalResult:
        """
        Open the provider's self-service portal.

        Raises:
            ValidationError: missing return_url
            FailedPreconditionError: user has no billing relationship yet
            TransientError: provider or store unavailable
        """
        if not return_url:
            raise ValidationError("return_url is required")

        record = self.store.get(user_id)
        if record is None or not record.external_customer_id:
            raise FailedPreconditionError("No billing relationship yet. Subscribe to a plan first.")

        url = self.provider.create_portal_session(
            customer_id=record.external_customer_id,
            return_url=return_url,
        )
        log_event("info", "billing.portal.created", user_id=user_id)
        return PortalResult(redirect_url=url)
