from __future__ import annotations

import os


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    PROJECT_NAME: str = "CellOps"

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./cellops.db")

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "memory://")
    SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")

    # Telegram delivery (optional; when unset, notifications are skipped)
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    TELEGRAM_CHAT_ID: str = os.getenv("TELEGRAM_CHAT_ID", "")
    NOTIFY_TIMEOUT_SECONDS: float = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

    # Process engine behaviour
    HOLD_ON_CRITICAL_FAILURE: bool = _flag("HOLD_ON_CRITICAL_FAILURE")
    SINGLE_ACTIVE_PROCESS_PER_CULTURE: bool = _flag("SINGLE_ACTIVE_PROCESS_PER_CULTURE", "true")
    DEFAULT_MIN_VIABILITY: float = float(os.getenv("DEFAULT_MIN_VIABILITY", "80"))

    @property
    def testing(self) -> bool:
        return os.getenv("TESTING") == "1"


settings = Settings()
