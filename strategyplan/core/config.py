import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional, FrozenSet

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

    # Stripe price catalog: test-mode and live-mode prices may both be configured.
    STRIPE_PRICE_STARTER_MONTHLY: Optional[str] = None
    STRIPE_PRICE_STARTER_MONTHLY_LIVE: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY_LIVE: Optional[str] = None
    STRIPE_PRICE_PRO_ANNUAL: Optional[str] = None
    STRIPE_PRICE_PRO_ANNUAL_LIVE: Optional[str] = None
    STRIPE_PRICE_TEAM_MONTHLY: Optional[str] = None
    STRIPE_PRICE_TEAM_MONTHLY_LIVE: Optional[str] = None
    STRIPE_PRICE_TEAM_ANNUAL: Optional[str] = None
    STRIPE_PRICE_TEAM_ANNUAL_LIVE: Optional[str] = None
    STRIPE_PRICE_TEAM_SEAT_MONTHLY: Optional[str] = None
    STRIPE_PRICE_TEAM_SEAT_MONTHLY_LIVE: Optional[str] = None
    STRIPE_PRICE_TEAM_SEAT_ANNUAL: Optional[str] = None
    STRIPE_PRICE_TEAM_SEAT_ANNUAL_LIVE: Optional[str] = None

    # Billing policy
    FREE_ACCESS_TENANT_IDS: str = ""  # comma-separated tenant ids that bypass all limits
    PAYMENT_GRACE_PERIOD_DAYS: int = 30

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "StrategyPlan <noreply@strategyplan.app>"

    # App URLs
    APP_BASE_URL: str = "http://localhost:5000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def free_access_tenant_ids(self) -> FrozenSet[str]:
        return frozenset(
            part.strip() for part in self.FREE_ACCESS_TENANT_IDS.split(",") if part.strip()
        )

    @property
    def stripe_live_mode(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY and self.STRIPE_SECRET_KEY.startswith("sk_live"))


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("strategyplan")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
