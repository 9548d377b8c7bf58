"""Limit projection: tier -> feature-limit bundle."""

from subsync.features.billing.tiers import TierCatalog
from subsync.models.billing import LimitBundle, Tier


def project(tier: Tier, catalog: TierCatalog) -> LimitBundle:
    """Return the limit bundle for `tier`. Pure; reads only the catalog."""
    return catalog.get(Tier(tier)).limits
