"""
Trial expiry worker.

Moves trials that ended without a subscription to canceled. Meant to run on
a schedule (cron, k8s CronJob); safe to run concurrently with the API since
every transition goes through the record store's compare-and-swap path.

    python -m subsync.workers.expire_trials --batch-size 200
"""
import argparse
import logging
import os
from datetime import datetime
from typing import Dict, Optional

from subsync.core.config import settings
from subsync.core.logging import configure_logging
from subsync.features.billing.store import BillingRecordStore, utc_now
from subsync.features.billing.tiers import load_tier_catalog
from subsync.features.billing.trials import TrialManager
from subsync.models.billing import Tier


def run_trial_expiry(now: Optional[datetime] = None, batch_size: int = 100) -> Dict[str, object]:
    now = now or utc_now()
    store = BillingRecordStore(load_tier_catalog(settings), max_retries=settings.BILLING_RECORD_MAX_RETRIES)
    trials = TrialManager(
        store,
        duration_days=settings.TRIAL_DURATION_DAYS,
        trial_tier=Tier(settings.TRIAL_DEFAULT_TIER),
    )
    expired = trials.expire_trials(now, batch_size=batch_size)
    return {"expired": expired, "timestamp": now.isoformat()}


def main() -> int:
    parser = argparse.ArgumentParser(description="Cancel free trials that ended without a subscription.")
    parser.add_argument("--batch-size", type=int, default=int(os.getenv("TRIAL_EXPIRY_BATCH_SIZE", "100")))
    args = parser.parse_args()

    configure_logging(settings.ENV)
    report = run_trial_expiry(batch_size=args.batch_size)
    logging.getLogger("subsync").info("trial_expiry.complete", extra={"status": "ok"})
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
