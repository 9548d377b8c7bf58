"""
Billing record store: optimistic compare-and-swap writes.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from subsync.core.database import get_db_session, user_billing_records
from subsync.core.errors import ConflictError, TransientError
from subsync.features.billing.store import BillingRecordStore
from subsync.models.billing import SubscriptionStatus, Tier

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _create(store, user_id="user_alice", tier=Tier.BASIC, status=SubscriptionStatus.ACTIVE, **fields):
    result = store.update(user_id, lambda current: store.new_record(user_id, tier, status, **fields))
    return result.record


def test_insert_and_get(store):
    record = _create(store, external_customer_id="cus_1")

    loaded = store.get("user_alice")
    assert loaded.version == 1
    assert loaded.external_customer_id == "cus_1"
    assert loaded.tier == Tier.BASIC
    assert loaded.same_state(record)


def test_get_missing_returns_none(store):
    assert store.get("nobody") is None


def test_update_bumps_version(store):
    _create(store)
    result = store.update("user_alice", lambda c: c.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))

    assert result.changed is True
    assert result.record.version == 2
    assert store.get("user_alice").status == SubscriptionStatus.PAST_DUE


def test_limits_always_follow_tier(store, catalog):
    """Caller-supplied limits are replaced by the tier projection."""
    _create(store)
    bogus = catalog.get(Tier.ENTERPRISE).limits
    store.update("user_alice", lambda c: c.model_copy(update={"tier": Tier.PRO, "limits": bogus}))

    assert store.get("user_alice").limits == catalog.get(Tier.PRO).limits


def test_unchanged_state_is_not_written(catalog):
    clock = iter([T0, T0 + timedelta(hours=1), T0 + timedelta(hours=2)])
    store = BillingRecordStore(catalog, clock=lambda: next(clock))
    _create(store)
    before = store.get("user_alice")

    result = store.update("user_alice", lambda c: c.model_copy(update={"status": SubscriptionStatus.ACTIVE}))

    assert result.changed is False
    after = store.get("user_alice")
    assert after.version == before.version
    assert after.updated_at == before.updated_at


def test_mutation_returning_none_leaves_store(store):
    assert store.update("user_alice", lambda c: None).record is None
    assert store.get("user_alice") is None


def test_updated_at_never_moves_backwards(catalog):
    """A writer with a slow clock cannot rewind updated_at."""
    times = iter([T0, T0, T0 - timedelta(minutes=5)])
    store = BillingRecordStore(catalog, clock=lambda: next(times))
    _create(store)

    store.update("user_alice", lambda c: c.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))

    assert store.get("user_alice").updated_at == T0


def test_user_id_is_immutable(store):
    _create(store)
    with pytest.raises(ValueError):
        store.update("user_alice", lambda c: c.model_copy(update={"user_id": "user_bob"}))


def test_lost_race_reruns_mutation_on_fresh_record(store):
    """A concurrent write between read and swap forces a retry with the newer record."""
    _create(store)
    seen_versions = []

    def mutate(current):
        seen_versions.append(current.version)
        if len(seen_versions) == 1:
            # Another writer sneaks in
            with get_db_session() as session:
                session.execute(
                    user_billing_records.update()
                    .where(user_billing_records.c.user_id == "user_alice")
                    .values(version=current.version + 1, tier=Tier.PRO.value)
                )
        return current.model_copy(update={"status": SubscriptionStatus.PAST_DUE})

    result = store.update("user_alice", mutate)

    assert seen_versions == [1, 2]
    assert result.attempts == 2
    final = store.get("user_alice")
    assert final.tier == Tier.PRO
    assert final.status == SubscriptionStatus.PAST_DUE
    assert final.version == 3


def test_retries_exhausted_raises_conflict(catalog):
    store = BillingRecordStore(catalog, max_retries=3)
    _create(store)
    calls = []

    def mutate(current):
        calls.append(current)
        return current.model_copy(update={"status": SubscriptionStatus.PAST_DUE})

    with patch.object(BillingRecordStore, "_compare_and_swap", return_value=None):
        with pytest.raises(ConflictError) as exc_info:
            store.update("user_alice", mutate)

    assert len(calls) == 3
    assert exc_info.value.status_code == 503
    assert store.get("user_alice").status == SubscriptionStatus.ACTIVE


def test_concurrent_insert_falls_back_to_update(store):
    """If another writer creates the record first, the mutation sees it on retry."""
    attempts = []

    def mutate(current):
        attempts.append(current)
        if current is None:
            _create(store, status=SubscriptionStatus.TRIALING)
            return store.new_record("user_alice", Tier.BASIC, SubscriptionStatus.INCOMPLETE)
        return current.model_copy(update={"external_customer_id": "cus_9"})

    store.update("user_alice", mutate)

    final = store.get("user_alice")
    assert attempts[0] is None
    assert final.status == SubscriptionStatus.TRIALING
    assert final.external_customer_id == "cus_9"


def test_customer_id_lookup(store):
    _create(store, external_customer_id="cus_1")
    assert store.find_user_id_by_customer("cus_1") == "user_alice"
    assert store.find_user_id_by_customer("cus_2") is None


def test_customer_id_unique_across_users(store):
    with get_db_session() as session:
        rows = session.execute(select(user_billing_records)).fetchall()
    assert rows == []

    _create(store, user_id="user_alice", external_customer_id="cus_1")
    with pytest.raises(ConflictError):
        BillingRecordStore(store.catalog, max_retries=2).update(
            "user_bob",
            lambda c: store.new_record("user_bob", Tier.BASIC, SubscriptionStatus.ACTIVE, external_customer_id="cus_1"),
        )


def test_list_expired_trials(store):
    _create(store, user_id="expired", status=SubscriptionStatus.TRIALING, trial_ends_at=T0 - timedelta(days=1))
    _create(store, user_id="running", status=SubscriptionStatus.TRIALING, trial_ends_at=T0 + timedelta(days=1))
    _create(
        store,
        user_id="subscribed",
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=T0 - timedelta(days=1),
        external_subscription_id="sub_1",
    )

    assert store.list_expired_trials(T0) == ["expired"]
    assert store.list_expired_trials(T0, exclude=["expired"]) == []


def test_connection_failure_is_transient(store):
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    broken = BillingRecordStore(store.catalog, session_factory=broken_session)
    with pytest.raises(TransientError):
        broken.get("user_alice")
