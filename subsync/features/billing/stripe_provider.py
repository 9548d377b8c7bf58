"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Every request carries a bounded timeout and limited network retries;
retryable Stripe failures surface as ProviderUnavailableError.
"""
from typing import Dict, Any, Optional
import stripe

from subsync.features.billing.provider import (
    BillingProviderError,
    CheckoutSession,
    ProviderUnavailableError,
)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _translate(exc: Exception, action: str) -> Exception:
    """Classify a Stripe exception as retryable or not."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProviderUnavailableError(f"Stripe {action} unavailable: {exc.__class__.__name__}")
    if isinstance(exc, stripe.APIError):
        # 5xx from Stripe
        return ProviderUnavailableError(f"Stripe {action} failed upstream: {exc.__class__.__name__}")
    return BillingProviderError(f"Stripe {action} failed: {exc}")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            timeout_seconds: Per-request network timeout
            max_network_retries: Stripe client retries for idempotent-safe failures
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        stripe.api_key = secret_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout_seconds)

    def create_customer(self, user_id: str, email: Optional[str], *, idempotency_key: str) -> str:
        """Create a Stripe customer tagged with the internal user id."""
        customer_data: Dict[str, Any] = {
            "metadata": {"user_id": user_id}
        }
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(idempotency_key=idempotency_key, **customer_data)
        except stripe.StripeError as e:
            raise _translate(e, "customer creation") from e
        return customer.id

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise _translate(e, "customer retrieval") from e
        except stripe.StripeError as e:
            raise _translate(e, "customer retrieval") from e
        data = _as_dict(customer)
        if data.get("deleted"):
            return None
        return data

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _translate(e, "subscription retrieval") from e
        return _as_dict(subscription)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session in subscription mode."""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            # Tag the subscription too so subscription events carry the user id
            "subscription_data": {"metadata": metadata or {}},
        }
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise _translate(e, "checkout session creation") from e
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise _translate(e, "portal session creation") from e
        return session.url
