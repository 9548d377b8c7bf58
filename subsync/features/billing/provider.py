"""
Billing provider protocol.

Defines the interface to the external payment provider (Stripe).
Business logic depends on this protocol only; stripe_provider.py holds the
Stripe-specific code and tests substitute a fake.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass

from subsync.core.errors import TransientError


@dataclass(frozen=True)
class CheckoutSession:
    """Provider-hosted checkout session."""
    session_id: str
    url: str


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every call is blocking network I/O with a bounded timeout. Implementations
    raise ProviderUnavailableError for retryable failures (timeouts,
    connection errors, rate limiting) and BillingProviderError otherwise.
    """

    def create_customer(self, user_id: str, email: Optional[str], *, idempotency_key: str) -> str:
        """
        Create a provider customer tagged with `user_id` in its metadata.

        Args:
            user_id: Internal user ID (stored in customer metadata)
            email: User email (optional)
            idempotency_key: Makes retried creates return the same customer

        Returns:
            Provider customer ID
        """
        ...

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a customer record.

        Returns:
            Customer object as a dict, or None if the provider has no such
            customer (or it was deleted)
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch a subscription with its items and period bounds."""
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a subscription-mode checkout session."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL
        """
        ...


class BillingProviderError(Exception):
    """Non-retryable provider failure (bad request, auth, unexpected response)."""
    pass


class ProviderUnavailableError(TransientError):
    """Provider timed out, was unreachable, or rate limited us. Retryable."""

    def __init__(self, message: str = "Billing provider temporarily unavailable"):
        super().__init__(message)
