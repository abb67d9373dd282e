"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from typing import Dict

from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "MedConsult Session Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'medconsult.db'}"

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["*"]

    # --- Text Sessions ---
    TEXT_RESPONSE_WINDOW_SECONDS: int = 300
    UNSTARTED_SESSION_TIMEOUT_SECONDS: int = 300

    # --- Calls ---
    CALL_GRACE_PERIOD_SECONDS: int = 5

    # --- Billing ---
    BILLING_UNIT_MINUTES: int = 10
    CLIENT_DURATION_SLACK_SECONDS: int = 60
    PAYOUT_CURRENCY: str = "USD"
    PAYOUT_RATES: Dict[str, Dict[str, str]] = {
        "USD": {"text": "4.00", "voice": "5.00", "video": "6.00"},
        "MWK": {"text": "4000.00", "voice": "5000.00", "video": "6000.00"},
    }

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 30

    # --- Payments ---
    PAYMENT_WEBHOOK_SECRET: str = ""
    PAYMENT_EVENT_TYPES: list[str] = ["api.charge.payment", "checkout.payment"]
    PAYMENT_REFERENCE_PREFIX: str = "MC"

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
