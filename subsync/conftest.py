# subsync/conftest.py
import os

# Configure before anything imports subsync.core.config
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTH_ALLOW_USER_ID_HEADER", "true")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENV", "test")

import pytest  # noqa: E402

from subsync.core.database import init_engine, create_all_tables, reset_database  # noqa: E402
from subsync.features.billing.tiers import DEFAULT_TIERS, TierCatalog, TierDefinition  # noqa: E402
from subsync.features.billing.store import BillingRecordStore  # noqa: E402
from subsync.models.billing import Tier  # noqa: E402

TEST_PRICES = {
    Tier.BASIC: "price_basic_test",
    Tier.PRO: "price_pro_test",
}


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """
    Create all database tables before running tests.

    Uses an in-memory SQLite database shared by every session (StaticPool).
    """
    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate billing tables so each test starts clean."""
    reset_database()
    yield


@pytest.fixture
def catalog():
    """Tier catalog with deterministic test price ids (enterprise unpriced)."""
    definitions = {}
    for tier, base in DEFAULT_TIERS.items():
        definitions[tier] = TierDefinition(
            tier=base.tier,
            name=base.name,
            description=base.description,
            limits=base.limits,
            monthly_price_cents=base.monthly_price_cents,
            features=base.features,
            stripe_price_id=TEST_PRICES.get(tier),
        )
    return TierCatalog(definitions)


@pytest.fixture
def store(catalog):
    return BillingRecordStore(catalog)
