import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Tier -> Stripe price mapping (never hardcode live price ids)
    STRIPE_PRICE_BASIC: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None  # custom pricing, usually unset

    # Billing policy
    BILLING_CANCEL_POLICY: str = "preserve"  # "preserve" | "downgrade"
    BILLING_RECORD_MAX_RETRIES: int = 5

    # Trials
    TRIAL_DURATION_DAYS: int = 30
    TRIAL_DEFAULT_TIER: str = "pro"

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"  # comma-separated
    AUTH_ALLOW_USER_ID_HEADER: bool = False  # X-User-Id fallback, local/test only

    # HTTP
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("subsync")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_BASIC",
        "STRIPE_PRICE_PRO",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_CANCEL_POLICY not in ("preserve", "downgrade"):
        message = f"Invalid BILLING_CANCEL_POLICY: {cfg.BILLING_CANCEL_POLICY!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
