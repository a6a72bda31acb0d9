import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Logging ("json" or "pretty"; unset picks by ENV)
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Optional[str] = None

    # Clerk Auth
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Plan catalog limits (prompts per billing period)
    FREE_PROMPTS_LIMIT: int = 10
    PRO_PROMPTS_LIMIT: int = 100

    # External billing provider webhooks
    BILLING_WEBHOOK_SECRET: Optional[str] = None
    BILLING_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # External per-feature usage tracker
    USAGE_TRACKER_URL: Optional[str] = None  # e.g. https://api.useautumn.com/v1
    USAGE_TRACKER_SECRET_KEY: Optional[str] = None
    USAGE_TRACKER_TIMEOUT_SECONDS: float = 10.0

    # "feature=ledger|external" pairs, comma-separated
    METERING_AUTHORITY_OVERRIDES: str = ""

    # Admin access (plan changes outside the billing provider)
    ADMIN_KEY: Optional[str] = None

    # App URLs
    FRONTEND_URL: str = "http://localhost:5173"

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
    log = logger or logging.getLogger("vanda")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CLERK_SECRET_KEY",
        "BILLING_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
