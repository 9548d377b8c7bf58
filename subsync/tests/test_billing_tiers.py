"""
Tier catalog and limit projection.
"""
import logging

import pytest

from subsync.core.config import Settings
from subsync.features.billing.limits import project
from subsync.features.billing.tiers import DEFAULT_TIERS, TierCatalog, TierDefinition, load_tier_catalog
from subsync.models.billing import LimitBundle, Tier, TIER_ORDER


def test_project_is_total_and_deterministic(catalog):
    """Every tier maps to a bundle, and the same bundle every time."""
    for tier in Tier:
        first = project(tier, catalog)
        assert isinstance(first, LimitBundle)
        assert project(tier, catalog) == first


def test_project_accepts_raw_tier_value(catalog):
    assert project("pro", catalog) == catalog.get(Tier.PRO).limits


def test_pro_limits(catalog):
    limits = project(Tier.PRO, catalog)
    assert limits.max_extinguishers == 500
    assert limits.photos_enabled is True
    assert limits.max_photos_per_unit == 5


def test_enterprise_is_unlimited(catalog):
    assert project(Tier.ENTERPRISE, catalog).max_extinguishers is None


def test_tier_order_lowest_first(catalog):
    assert TIER_ORDER[0] == Tier.BASIC
    assert catalog.lowest_tier == Tier.BASIC


def test_derive_tier_exact_price_match(catalog):
    assert catalog.derive_tier("price_pro_test") == Tier.PRO
    assert catalog.derive_tier("price_basic_test") == Tier.BASIC


def test_derive_tier_substring_fallback(catalog):
    """Unconfigured price ids fall back to tier names in the id."""
    assert catalog.derive_tier("price_Enterprise_annual") == Tier.ENTERPRISE


def test_derive_tier_ambiguous_picks_lowest_and_warns(catalog, caplog):
    with caplog.at_level(logging.WARNING, logger="subsync"):
        tier = catalog.derive_tier("price_basic_to_pro_upgrade")

    assert tier == Tier.BASIC
    assert "billing.tier.ambiguous_price" in [r.getMessage() for r in caplog.records]


def test_derive_tier_unknown_defaults_to_lowest_with_warning(catalog, caplog):
    with caplog.at_level(logging.WARNING, logger="subsync"):
        tier = catalog.derive_tier("price_1NzQxyz")

    assert tier == Tier.BASIC
    assert "billing.tier.unknown_price" in [r.getMessage() for r in caplog.records]


def test_derive_tier_none_defaults_to_lowest(catalog):
    assert catalog.derive_tier(None) == Tier.BASIC


def test_lookup_plan(catalog):
    assert catalog.lookup_plan("Pro").tier == Tier.PRO
    assert catalog.lookup_plan("platinum") is None


def test_purchasable_requires_price(catalog):
    assert catalog.get(Tier.PRO).purchasable is True
    assert catalog.get(Tier.ENTERPRISE).purchasable is False


def test_catalog_rejects_duplicate_price_ids():
    definitions = {
        tier: TierDefinition(
            tier=base.tier,
            name=base.name,
            description=base.description,
            limits=base.limits,
            monthly_price_cents=base.monthly_price_cents,
            stripe_price_id="price_same",
        )
        for tier, base in DEFAULT_TIERS.items()
    }
    with pytest.raises(ValueError):
        TierCatalog(definitions)


def test_catalog_rejects_missing_tier():
    with pytest.raises(ValueError):
        TierCatalog({Tier.BASIC: DEFAULT_TIERS[Tier.BASIC]})


def test_catalog_is_read_only(catalog):
    with pytest.raises(TypeError):
        catalog.definitions[Tier.PRO] = DEFAULT_TIERS[Tier.BASIC]


def test_load_tier_catalog_reads_price_settings():
    cfg = Settings(STRIPE_PRICE_BASIC="price_b", STRIPE_PRICE_PRO="price_p", _env_file=None)
    loaded = load_tier_catalog(cfg)

    assert loaded.tier_for_price("price_p") == Tier.PRO
    assert loaded.tier_for_price("price_b") == Tier.BASIC
    assert loaded.get(Tier.ENTERPRISE).stripe_price_id is None
