"""
Customer resolution: Stripe customer id <-> internal user id.
"""
import hashlib
from typing import Optional

from subsync.core.logging import log_event
from subsync.features.billing.provider import BillingProvider
from subsync.features.billing.store import BillingRecordStore
from subsync.models.billing import SubscriptionStatus, UserBillingRecord

# Metadata key carrying the internal user id on Stripe objects
USER_ID_METADATA_KEY = "user_id"


def customer_idempotency_key(user_id: str, email: Optional[str]) -> str:
    # Stripe rejects a reused key with different parameters, so the email is part of it
    email_hash = hashlib.sha256((email or "").strip().lower().encode("utf-8")).hexdigest()[:16]
    return f"customer-create-{user_id}-{email_hash}"


class CustomerResolver:
    """Maps provider customers to internal users and links new customers."""

    def __init__(self, store: BillingRecordStore, provider: BillingProvider):
        self.store = store
        self.provider = provider

    def resolve_user_id(self, external_customer_id: Optional[str]) -> Optional[str]:
        """
        Find the internal user for a provider customer.

        Index lookup first; if the local mapping is not written yet, read the
        user id tag from the provider's customer metadata.

        Returns:
            user_id, or None when neither path resolves (caller drops the event)

        Raises:
            TransientError: store or provider unreachable
        """
        if not external_customer_id:
            return None

        user_id = self.store.find_user_id_by_customer(external_customer_id)
        if user_id:
            return user_id

        customer = self.provider.retrieve_customer(external_customer_id)
        if customer:
            user_id = (customer.get("metadata") or {}).get(USER_ID_METADATA_KEY)
        if user_id:
            log_event(
                "info",
                "billing.customer.resolved_via_provider",
                user_id=user_id,
                extra={"customer_id": external_customer_id},
            )
            return user_id

        log_event(
            "warning",
            "billing.customer.unresolved",
            error_code="not_found",
            extra={"customer_id": external_customer_id},
        )
        return None

    def find_or_create_external_customer(self, user_id: str, email: Optional[str]) -> str:
        """
        Return the user's provider customer id, creating one if needed.

        The customer is created before the mapping is persisted. If persisting
        fails the caller retries; the idempotency key makes the retried create
        return the same customer, and a stray duplicate customer is tolerated.
        """
        record = self.store.get(user_id)
        if record and record.external_customer_id:
            return record.external_customer_id

        customer_id = self.provider.create_customer(
            user_id,
            email,
            idempotency_key=customer_idempotency_key(user_id, email),
        )

        def link(current: Optional[UserBillingRecord]) -> Optional[UserBillingRecord]:
            if current is None:
                return self.store.new_record(
                    user_id,
                    self.store.catalog.lowest_tier,
                    SubscriptionStatus.INCOMPLETE,
                    external_customer_id=customer_id,
                )
            if current.external_customer_id:
                # Set once: first linked customer wins
                return None
            return current.model_copy(update={"external_customer_id": customer_id})

        result = self.store.update(user_id, link)
        linked = result.record.external_customer_id if result.record else customer_id
        if linked != customer_id:
            log_event(
                "warning",
                "billing.customer.duplicate_created",
                user_id=user_id,
                extra={"kept": linked, "orphaned": customer_id},
            )
        else:
            log_event("info", "billing.customer.linked", user_id=user_id, extra={"customer_id": customer_id})
        return linked
