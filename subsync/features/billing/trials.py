"""
Free trials.

New users get TRIAL_DURATION_DAYS of the trial tier without a payment
method. Trials are local state only: no Stripe subscription exists until the
user checks out, so expiry is driven by `expire_trials` rather than by a
webhook.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from subsync.core.errors import ConflictError
from subsync.core.logging import log_event
from subsync.features.billing.store import BillingRecordStore, utc_now
from subsync.models.billing import SubscriptionStatus, Tier, UserBillingRecord


class TrialManager:
    def __init__(
        self,
        store: BillingRecordStore,
        *,
        duration_days: int = 30,
        trial_tier: Tier = Tier.PRO,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.duration = timedelta(days=duration_days)
        self.trial_tier = trial_tier
        self._clock = clock

    def start_trial(self, user_id: str, now: Optional[datetime] = None) -> UserBillingRecord:
        """
        Put a user on the free trial.

        Only users without billing history qualify: no record at all, or a
        record left `incomplete` by an abandoned checkout that never trialed.
        Anyone else gets their record back unchanged.
        """
        now = now or self._clock()
        trial_ends_at = now + self.duration

        def begin(current: Optional[UserBillingRecord]) -> Optional[UserBillingRecord]:
            if current is None:
                return self.store.new_record(
                    user_id,
                    self.trial_tier,
                    SubscriptionStatus.TRIALING,
                    trial_started_at=now,
                    trial_ends_at=trial_ends_at,
                )
            eligible = (
                current.status is SubscriptionStatus.INCOMPLETE
                and current.external_subscription_id is None
                and current.trial_started_at is None
            )
            if not eligible:
                return None
            return current.model_copy(update={
                "tier": self.trial_tier,
                "status": SubscriptionStatus.TRIALING,
                "trial_started_at": now,
                "trial_ends_at": trial_ends_at,
            })

        result = self.store.update(user_id, begin)
        if result.changed:
            log_event(
                "info",
                "billing.trial.started",
                user_id=user_id,
                extra={"tier": self.trial_tier.value, "trial_ends_at": trial_ends_at.isoformat()},
            )
        return result.record

    def expire_trials(self, now: Optional[datetime] = None, batch_size: int = 100) -> int:
        """
        Cancel trials that ended without a subscription.

        Returns:
            Number of records moved to canceled
        """
        now = now or self._clock()
        expired = 0
        # Rows left in place this run; expired rows drop out of the scan by themselves
        left: Set[str] = set()

        while True:
            batch = self.store.list_expired_trials(now, limit=batch_size, exclude=left)
            if not batch:
                break
            for user_id in batch:
                try:
                    result = self.store.update(user_id, lambda current: self._expire(current, now))
                except ConflictError:
                    # Busy record; the next run picks it up again
                    log_event("warning", "billing.trial.expire_conflict", user_id=user_id)
                    left.add(user_id)
                    continue
                if result.changed:
                    expired += 1
                    log_event("info", "billing.trial.expired", user_id=user_id)
                else:
                    left.add(user_id)

        if expired:
            log_event("info", "billing.trial.expire_run", extra={"expired": expired})
        return expired

    @staticmethod
    def _expire(current: Optional[UserBillingRecord], now: datetime) -> Optional[UserBillingRecord]:
        # Re-check under CAS: the user may have subscribed since the scan
        if current is None or current.status is not SubscriptionStatus.TRIALING:
            return None
        if current.external_subscription_id is not None:
            return None
        if current.trial_ends_at is None or current.trial_ends_at > now:
            return None
        return current.model_copy(update={"status": SubscriptionStatus.CANCELED})
