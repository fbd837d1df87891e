import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Text generation backends
    NOVITA_API_KEY: Optional[str] = None
    NOVITA_BASE_URL: str = "https://api.novita.ai"
    NOVITA_CHAT_MODEL: str = "meta-llama/llama-3.1-8b-instruct"
    GROQ_API_KEY: Optional[str] = None
    GROQ_CHAT_MODEL: str = "llama-3.1-8b-instant"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    CHAT_MAX_TOKENS: int = 150
    CHAT_TEMPERATURE: float = 0.7

    # Image generation
    IMAGE_POLL_INTERVAL_SECONDS: float = 2.0
    IMAGE_POLL_MAX_ATTEMPTS: int = 150

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Identity
    AUTH_JWT_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    # Plan/integration settings cache
    SETTINGS_CACHE_TTL_SECONDS: int = 300

    # Monthly budget ceilings (overridable via the budget_limits system setting)
    BUDGET_API_COST_LIMIT: float = 1000.0
    BUDGET_MESSAGE_LIMIT: int = 4_000_000
    BUDGET_IMAGE_LIMIT: int = 2500
    BUDGET_WARNING_PERCENT: float = 80.0

    # Cost accounting for chat completions (USD per million tokens)
    CHAT_COST_PER_MILLION_TOKENS: float = 0.10
    CHAT_DEFAULT_TOKENS: int = 250
    IMAGE_COST_PER_IMAGE: float = 0.0015

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
    log = logger or logging.getLogger("companion")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = []
    if not getattr(cfg, "DATABASE_URL", None):
        missing.append("DATABASE_URL")
    if not (getattr(cfg, "NOVITA_API_KEY", None) or getattr(cfg, "GROQ_API_KEY", None)):
        missing.append("NOVITA_API_KEY|GROQ_API_KEY")

    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
