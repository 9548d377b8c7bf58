"""
Billing record store.

Sole writer of `user_billing_records`. Writes are optimistic
compare-and-swap updates on the `version` column, scoped to one user:

    read current -> mutate(current) -> UPDATE ... WHERE version = <read version>

On a lost race the mutation is re-run against the fresh record. Callers must
not hold this across provider calls; do network I/O first, then update.

`limits` is never taken from the caller: every write recomputes it from the
record's tier.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError

from subsync.core.database import get_db_session, user_billing_records
from subsync.core.errors import ConflictError, TransientError
from subsync.core.logging import log_event
from subsync.features.billing.limits import project
from subsync.features.billing.tiers import TierCatalog
from subsync.models.billing import (
    LimitBundle,
    SubscriptionStatus,
    Tier,
    UserBillingRecord,
)


Mutation = Callable[[Optional[UserBillingRecord]], Optional[UserBillingRecord]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class UpdateResult:
    record: Optional[UserBillingRecord]
    changed: bool
    attempts: int


@contextmanager
def _store_errors():
    """Map connectivity failures to TransientError."""
    try:
        yield
    except (OperationalError, DisconnectionError) as e:
        raise TransientError("Billing store unavailable") from e


class BillingRecordStore:
    """Persistence for UserBillingRecord with per-user optimistic concurrency."""

    def __init__(
        self,
        catalog: TierCatalog,
        *,
        session_factory=get_db_session,
        max_retries: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.catalog = catalog
        self._session = session_factory
        self.max_retries = max_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[UserBillingRecord]:
        with _store_errors(), self._session() as session:
            row = session.execute(
                select(user_billing_records).where(user_billing_records.c.user_id == user_id)
            ).fetchone()
        return self._to_record(row) if row else None

    def find_user_id_by_customer(self, external_customer_id: str) -> Optional[str]:
        """Indexed lookup on external_customer_id."""
        with _store_errors(), self._session() as session:
            row = session.execute(
                select(user_billing_records.c.user_id).where(
                    user_billing_records.c.external_customer_id == external_customer_id
                )
            ).fetchone()
        return row[0] if row else None

    def list_expired_trials(
        self, now: datetime, limit: int = 100, exclude: Optional[Iterable[str]] = None
    ) -> List[str]:
        """User ids still trialing past trial end, without a subscription.

        `exclude` skips users the caller already tried and left in place.
        """
        conditions = [
            user_billing_records.c.status == SubscriptionStatus.TRIALING.value,
            user_billing_records.c.trial_ends_at <= now,
            user_billing_records.c.external_subscription_id.is_(None),
        ]
        excluded = list(exclude or ())
        if excluded:
            conditions.append(user_billing_records.c.user_id.not_in(excluded))
        with _store_errors(), self._session() as session:
            rows = session.execute(
                select(user_billing_records.c.user_id)
                .where(and_(*conditions))
                .order_by(user_billing_records.c.trial_ends_at.asc(), user_billing_records.c.user_id.asc())
                .limit(limit)
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def new_record(self, user_id: str, tier: Tier, status: SubscriptionStatus, **fields) -> UserBillingRecord:
        """Build an unsaved record with limits projected from `tier`."""
        return UserBillingRecord(
            user_id=user_id,
            tier=tier,
            status=status,
            limits=project(tier, self.catalog),
            updated_at=self._clock(),
            **fields,
        )

    def update(self, user_id: str, mutate: Mutation) -> UpdateResult:
        """
        Apply `mutate` atomically to the user's record.

        `mutate` receives the current record (None if absent) and returns the
        desired record, or None to leave the store untouched. It may run more
        than once and must be free of side effects.

        Raises:
            ConflictError: concurrent writers won max_retries times in a row
            TransientError: store unreachable
        """
        for attempt in range(1, self.max_retries + 1):
            current = self.get(user_id)
            desired = mutate(current)

            if desired is None:
                return UpdateResult(record=current, changed=False, attempts=attempt)

            desired = self._normalize(user_id, desired)
            if current is not None and current.same_state(desired):
                return UpdateResult(record=current, changed=False, attempts=attempt)

            written = self._insert(desired) if current is None else self._compare_and_swap(current, desired)
            if written is not None:
                return UpdateResult(record=written, changed=True, attempts=attempt)

            log_event(
                "info",
                "billing.store.write_conflict",
                user_id=user_id,
                extra={"attempt": attempt},
            )

        log_event(
            "warning",
            "billing.store.retries_exhausted",
            user_id=user_id,
            error_code="conflict_retry_exhausted",
            extra={"max_retries": self.max_retries},
        )
        raise ConflictError(f"Concurrent updates for user {user_id}; retry later")

    def _normalize(self, user_id: str, desired: UserBillingRecord) -> UserBillingRecord:
        if desired.user_id != user_id:
            raise ValueError("user_id is immutable")
        return desired.model_copy(update={"limits": project(desired.tier, self.catalog)})

    def _values(self, record: UserBillingRecord, *, version: int, updated_at: datetime) -> dict:
        return {
            "external_customer_id": record.external_customer_id,
            "external_subscription_id": record.external_subscription_id,
            "tier": record.tier.value,
            "status": record.status.value,
            "current_period_start": record.current_period_start,
            "current_period_end": record.current_period_end,
            "trial_started_at": record.trial_started_at,
            "trial_ends_at": record.trial_ends_at,
            "limits": record.limits.model_dump(),
            "version": version,
            "updated_at": updated_at,
        }

    def _insert(self, record: UserBillingRecord) -> Optional[UserBillingRecord]:
        now = self._clock()
        values = self._values(record, version=1, updated_at=now)
        try:
            with _store_errors(), self._session() as session:
                session.execute(insert(user_billing_records).values(user_id=record.user_id, **values))
                session.commit()
        except IntegrityError:
            # Another writer created the record (or claimed the customer id) first
            return None
        return record.model_copy(update={"version": 1, "updated_at": now})

    def _compare_and_swap(self, current: UserBillingRecord, desired: UserBillingRecord) -> Optional[UserBillingRecord]:
        # updated_at never moves backwards, even with clock skew between writers
        now = max(self._clock(), current.updated_at)
        next_version = current.version + 1
        values = self._values(desired, version=next_version, updated_at=now)
        try:
            with _store_errors(), self._session() as session:
                result = session.execute(
                    update(user_billing_records)
                    .where(
                        and_(
                            user_billing_records.c.user_id == current.user_id,
                            user_billing_records.c.version == current.version,
                        )
                    )
                    .values(**values)
                )
                session.commit()
        except IntegrityError:
            # external_customer_id already linked to another user
            return None
        if result.rowcount != 1:
            return None
        return desired.model_copy(update={"version": next_version, "updated_at": now})

    def _to_record(self, row) -> UserBillingRecord:
        return UserBillingRecord(
            user_id=row.user_id,
            external_customer_id=row.external_customer_id,
            external_subscription_id=row.external_subscription_id,
            tier=Tier(row.tier),
            status=SubscriptionStatus(row.status),
            current_period_start=_utc(row.current_period_start),
            current_period_end=_utc(row.current_period_end),
            trial_started_at=_utc(row.trial_started_at),
            trial_ends_at=_utc(row.trial_ends_at),
            limits=LimitBundle(**row.limits),
            version=row.version,
            updated_at=_utc(row.updated_at),
        )
