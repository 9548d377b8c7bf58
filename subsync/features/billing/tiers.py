"""
subsync/features/billing/tiers.py

Tier catalog.

Handles:
- Static tier definitions (limits, display data, monthly price)
- Tier -> Stripe price id mapping (loaded once from settings)
- Price id -> tier derivation for incoming subscription events

The catalog is immutable after construction and safe to share between
threads. Components receive it explicitly instead of importing a global.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from subsync.core.logging import log_event
from subsync.models.billing import LimitBundle, Tier, TIER_ORDER


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    description: str
    limits: LimitBundle
    monthly_price_cents: Optional[int]  # None = custom pricing
    features: Tuple[str, ...] = ()
    stripe_price_id: Optional[str] = None

    @property
    def purchasable(self) -> bool:
        """Self-serve checkout needs a configured Stripe price."""
        return bool(self.stripe_price_id)


DEFAULT_TIERS: Dict[Tier, TierDefinition] = {
    Tier.BASIC: TierDefinition(
        tier=Tier.BASIC,
        name="Basic",
        description="Perfect for small facilities",
        monthly_price_cents=2900,
        limits=LimitBundle(
            max_extinguishers=100,
            photos_enabled=False,
            max_photos_per_unit=0,
            gps_enabled=False,
            advanced_export_enabled=False,
            inspection_history_enabled=False,
            priority_support=False,
        ),
        features=(
            "Up to 100 fire extinguishers",
            "Pass/Fail inspection tracking",
            "13-point inspection checklist",
            "Basic Excel export",
            "Time tracking per section",
            "Mobile access",
        ),
    ),
    Tier.PRO: TierDefinition(
        tier=Tier.PRO,
        name="Pro",
        description="For growing organizations",
        monthly_price_cents=7900,
        limits=LimitBundle(
            max_extinguishers=500,
            photos_enabled=True,
            max_photos_per_unit=5,
            gps_enabled=True,
            advanced_export_enabled=True,
            inspection_history_enabled=True,
            priority_support=True,
        ),
        features=(
            "Up to 500 fire extinguishers",
            "Everything in Basic, plus:",
            "Up to 5 photos per unit",
            "GPS location tracking",
            "Advanced export options",
            "Inspection history tracking",
            "Monthly cycle automation",
            "Priority email support",
        ),
    ),
    Tier.ENTERPRISE: TierDefinition(
        tier=Tier.ENTERPRISE,
        name="Enterprise",
        description="For large organizations",
        monthly_price_cents=None,
        limits=LimitBundle(
            max_extinguishers=None,
            photos_enabled=True,
            max_photos_per_unit=10,
            gps_enabled=True,
            advanced_export_enabled=True,
            inspection_history_enabled=True,
            priority_support=True,
        ),
        features=(
            "Unlimited fire extinguishers",
            "Everything in Pro, plus:",
            "Custom integrations",
            "Dedicated account manager",
            "Priority 24/7 support",
            "Custom training",
            "API access",
            "SLA guarantee",
        ),
    ),
}


@dataclass(frozen=True)
class TierCatalog:
    """Read-only tier table with price lookups in both directions."""

    definitions: Mapping[Tier, TierDefinition]
    _by_price: Mapping[str, Tier] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        missing = [t for t in TIER_ORDER if t not in self.definitions]
        if missing:
            raise ValueError(f"Tier catalog missing definitions for: {', '.join(t.value for t in missing)}")

        by_price: Dict[str, Tier] = {}
        for definition in self.definitions.values():
            price_id = definition.stripe_price_id
            if not price_id:
                continue
            if price_id in by_price:
                raise ValueError(f"Stripe price {price_id} mapped to more than one tier")
            by_price[price_id] = definition.tier

        object.__setattr__(self, "definitions", MappingProxyType(dict(self.definitions)))
        object.__setattr__(self, "_by_price", MappingProxyType(by_price))

    @property
    def lowest_tier(self) -> Tier:
        return TIER_ORDER[0]

    def get(self, tier: Tier) -> TierDefinition:
        return self.definitions[tier]

    def lookup_plan(self, plan_id: str) -> Optional[TierDefinition]:
        """Resolve a client-supplied plan id ("pro") to its definition."""
        try:
            return self.definitions[Tier(plan_id.strip().lower())]
        except (ValueError, AttributeError):
            return None

    def tier_for_price(self, price_id: Optional[str]) -> Optional[Tier]:
        """Exact price id match only."""
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def derive_tier(self, price_id: Optional[str]) -> Tier:
        """
        Map a subscription's price id to a tier.

        1. Exact match against configured price ids.
        2. Tier name contained in the price id ("price_pro_yearly" -> pro).
           If several tier names match, the lowest of them wins.
        3. Otherwise the lowest tier, with a warning. An unrecognized price
           must never grant elevated entitlements.
        """
        exact = self.tier_for_price(price_id)
        if exact is not None:
            return exact

        candidate = (price_id or "").lower()
        matches = [t for t in TIER_ORDER if t.value in candidate]
        if len(matches) > 1:
            log_event(
                "warning",
                "billing.tier.ambiguous_price",
                extra={"price_id": price_id, "matches": [t.value for t in matches], "chosen": matches[0].value},
            )
        if matches:
            return matches[0]

        log_event(
            "warning",
            "billing.tier.unknown_price",
            extra={"price_id": price_id, "defaulted_to": self.lowest_tier.value},
        )
        return self.lowest_tier


def load_tier_catalog(settings_obj) -> TierCatalog:
    """Build the catalog from settings (STRIPE_PRICE_<TIER>)."""
    definitions = {}
    for tier, base in DEFAULT_TIERS.items():
        price_id = getattr(settings_obj, f"STRIPE_PRICE_{tier.name}", None) or None
        definitions[tier] = TierDefinition(
            tier=base.tier,
            name=base.name,
            description=base.description,
            limits=base.limits,
            monthly_price_cents=base.monthly_price_cents,
            features=base.features,
            stripe_price_id=price_id,
        )
    return TierCatalog(definitions=definitions)
