"""
Billing service wiring.

Builds the billing components once from Settings and hands them to the API
layer. The tier catalog, store and provider are shared by every component;
nothing here is request-scoped.

All Stripe-specific code is in stripe_provider.py.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from subsync.core.config import Settings, settings
from subsync.core.errors import TransientError
from subsync.features.billing.customers import CustomerResolver
from subsync.features.billing.ledger import EventLedger
from subsync.features.billing.provider import BillingProvider
from subsync.features.billing.reconciler import SubscriptionReconciler
from subsync.features.billing.sessions import SessionBroker
from subsync.features.billing.store import BillingRecordStore
from subsync.features.billing.stripe_provider import StripeProvider
from subsync.features.billing.tiers import TierCatalog, load_tier_catalog
from subsync.features.billing.trials import TrialManager
from subsync.features.billing.webhooks import WebhookGateway
from subsync.models.billing import Tier


@dataclass(frozen=True)
class BillingService:
    catalog: TierCatalog
    store: BillingRecordStore
    provider: BillingProvider
    resolver: CustomerResolver
    sessions: SessionBroker
    reconciler: SubscriptionReconciler
    webhooks: WebhookGateway
    trials: TrialManager


def billing_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Check if billing is enabled (Stripe configured)."""
    cfg = settings_obj or settings
    return bool(cfg.STRIPE_SECRET_KEY)


def build_billing_service(
    settings_obj: Settings,
    provider: Optional[BillingProvider] = None,
    catalog: Optional[TierCatalog] = None,
) -> BillingService:
    """
    Assemble the billing components.

    `provider` and `catalog` default to Stripe and the settings-driven
    catalog; tests pass a fake provider instead.
    """
    catalog = catalog or load_tier_catalog(settings_obj)
    if provider is None:
        provider = StripeProvider(
            settings_obj.STRIPE_SECRET_KEY,
            timeout_seconds=settings_obj.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=settings_obj.STRIPE_MAX_NETWORK_RETRIES,
        )

    store = BillingRecordStore(catalog, max_retries=settings_obj.BILLING_RECORD_MAX_RETRIES)
    resolver = CustomerResolver(store, provider)
    reconciler = SubscriptionReconciler(
        catalog,
        store,
        provider,
        resolver,
        cancel_policy=settings_obj.BILLING_CANCEL_POLICY,
    )
    return BillingService(
        catalog=catalog,
        store=store,
        provider=provider,
        resolver=resolver,
        sessions=SessionBroker(catalog, store, provider, resolver),
        reconciler=reconciler,
        webhooks=WebhookGateway(
            settings_obj.STRIPE_WEBHOOK_SECRET,
            reconciler,
            EventLedger(),
            tolerance_seconds=settings_obj.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        ),
        trials=TrialManager(
            store,
            duration_days=settings_obj.TRIAL_DURATION_DAYS,
            trial_tier=Tier(settings_obj.TRIAL_DEFAULT_TIER),
        ),
    )


@lru_cache(maxsize=1)
def _default_service() -> BillingService:
    return build_billing_service(settings)


def get_billing_service() -> BillingService:
    """
    FastAPI dependency. Overridden in tests via app.dependency_overrides.

    Raises:
        TransientError: Stripe is not configured in this environment
    """
    if not billing_enabled():
        raise TransientError("Billing not enabled", code="billing_disabled")
    return _default_service()
