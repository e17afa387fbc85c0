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
    STRIPE_TIMEOUT_SECONDS: float = 20.0
    NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY: Optional[str] = None

    # Client confirmation must carry a paid checkout session id
    CONFIRM_REQUIRES_SESSION: bool = False

    # LLM rewriting (Groq)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    # Sessions
    SESSION_TTL_DAYS: int = 30

    # App URLs
    APP_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"
    CORS_ORIGINS: str = "*"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()


# Features that stay off (rather than fail) when their keys are missing
FEATURE_KEYS = {
    "database": ("DATABASE_URL",),
    "billing": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "rewriter": ("GROQ_API_KEY",),
}


def missing_config(cfg: Optional[Settings] = None) -> dict[str, list[str]]:
    """Missing keys grouped by the feature they switch on."""
    cfg = cfg or settings
    missing = {}
    for feature, keys in FEATURE_KEYS.items():
        absent = [key for key in keys if not getattr(cfg, key, None)]
        if absent:
            missing[feature] = absent
    return missing


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing configuration.

    Strict mode raises RuntimeError; otherwise one warning per disabled
    feature. Only key names are logged, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("resume_rewriter")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = missing_config(cfg)
    if not missing:
        return True

    if strict_mode:
        keys = [key for absent in missing.values() for key in absent]
        raise RuntimeError(f"Missing required configuration: {', '.join(keys)}")
    for feature, absent in missing.items():
        log.warning("config.missing", extra={"feature": feature, "keys": ",".join(absent)})
    return True
