"""
Stripe provider: request shape and error classification (Stripe SDK mocked).
"""
from unittest.mock import Mock, patch

import pytest
import stripe

from subsync.core.errors import TransientError
from subsync.features.billing.provider import BillingProviderError, ProviderUnavailableError
from subsync.features.billing.stripe_provider import StripeProvider


@pytest.fixture
def provider():
    return StripeProvider("sk_test_123", timeout_seconds=3.0, max_network_retries=1)


def test_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider(None)


def test_create_customer_passes_idempotency_key(provider):
    with patch("subsync.features.billing.stripe_provider.stripe.Customer.create") as create:
        create.return_value = Mock(id="cus_123")
        customer_id = provider.create_customer("user_alice", "a@example.com", idempotency_key="customer-create-user_alice-1a2b")

    assert customer_id == "cus_123"
    kwargs = create.call_args.kwargs
    assert kwargs["idempotency_key"] == "customer-create-user_alice-1a2b"
    assert kwargs["metadata"] == {"user_id": "user_alice"}
    assert kwargs["email"] == "a@example.com"


def test_checkout_session_tags_user(provider):
    with patch("subsync.features.billing.stripe_provider.stripe.checkout.Session.create") as create:
        create.return_value = Mock(id="cs_1", url="https://checkout.stripe.com/cs_1")
        session = provider.create_checkout_session(
            "cus_1", "price_pro", "https://a", "https://b",
            metadata={"user_id": "user_alice"}, client_reference_id="user_alice",
        )

    assert session.session_id == "cs_1"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert kwargs["subscription_data"] == {"metadata": {"user_id": "user_alice"}}
    assert kwargs["client_reference_id"] == "user_alice"


@pytest.mark.parametrize("exc", [
    stripe.APIConnectionError("timeout"),
    stripe.RateLimitError("slow down"),
    stripe.APIError("stripe 500"),
])
def test_retryable_failures_are_transient(provider, exc):
    with patch("subsync.features.billing.stripe_provider.stripe.Subscription.retrieve", side_effect=exc):
        with pytest.raises(ProviderUnavailableError) as exc_info:
            provider.retrieve_subscription("sub_1")

    assert isinstance(exc_info.value, TransientError)
    assert exc_info.value.__cause__ is exc


def test_bad_request_is_not_transient(provider):
    exc = stripe.InvalidRequestError("No such price", "price")
    with patch("subsync.features.billing.stripe_provider.stripe.checkout.Session.create", side_effect=exc):
        with pytest.raises(BillingProviderError):
            provider.create_checkout_session("cus_1", "price_x", "https://a", "https://b")


def test_missing_customer_is_none(provider):
    exc = stripe.InvalidRequestError("No such customer", "id", code="resource_missing")
    with patch("subsync.features.billing.stripe_provider.stripe.Customer.retrieve", side_effect=exc):
        assert provider.retrieve_customer("cus_gone") is None


def test_deleted_customer_is_none(provider):
    with patch("subsync.features.billing.stripe_provider.stripe.Customer.retrieve") as retrieve:
        retrieve.return_value = {"id": "cus_1", "deleted": True}
        assert provider.retrieve_customer("cus_1") is None


def test_customer_metadata_returned(provider):
    with patch("subsync.features.billing.stripe_provider.stripe.Customer.retrieve") as retrieve:
        retrieve.return_value = {"id": "cus_1", "metadata": {"user_id": "user_alice"}}
        assert provider.retrieve_customer("cus_1")["metadata"]["user_id"] == "user_alice"
