import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity provider JWT verification
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: str = "HS256"  # comma-separated
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_JWT_ISSUER: Optional[str] = None

    # Upstream model providers (comma-separated key pools)
    GEMINI_API_KEYS: Optional[str] = None
    DEEPSEEK_API_KEYS: Optional[str] = None
    GEMINI_MODEL: str = "gemini-1.5-flash"
    DEEPSEEK_MODEL: str = "deepseek-chat"
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    PROVIDER_MAX_RETRIES: int = 5
    PROVIDER_RETRY_DELAY_SECONDS: float = 1.0

    # Session affinity cache
    SESSION_TTL_SECONDS: int = 30 * 60
    SESSION_MAX_ENTRIES: int = 10000

    # Chat request limits
    CHAT_RATE_LIMIT_PER_MINUTE: int = 60
    MAX_PROMPT_LENGTH: int = 2000
    MAX_PERSONA_LENGTH: int = 50

    # Payment webhooks
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    PAYPAL_WEBHOOK_SECRET: Optional[str] = None
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None

    # Internal cron endpoints
    INTERNAL_API_KEY: Optional[str] = None

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return (self.ENV or "").lower() == "production"

settings = Settings()


def split_keys(raw: Optional[str]) -> List[str]:
    """Split a comma-separated key pool, dropping blanks."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("personachat")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "INTERNAL_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not split_keys(getattr(cfg, "GEMINI_API_KEYS", None)) and not split_keys(getattr(cfg, "DEEPSEEK_API_KEYS", None)):
        missing.append("GEMINI_API_KEYS|DEEPSEEK_API_KEYS")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
