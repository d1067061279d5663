"""
Checklist Sync Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os


def _csv(value: str) -> tuple:
    return tuple(part.strip() for part in value.split(",") if part.strip())


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # Resource store
    STORE_BASE_URL = os.getenv("STORE_BASE_URL", "http://localhost:3000")
    STORE_API_TOKEN = os.getenv("STORE_API_TOKEN")
    STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
    STORE_RETRY_MAX = int(os.getenv("STORE_RETRY_MAX", "2"))

    # Live sync
    POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
    TICK_INTERVAL_SECONDS = float(os.getenv("TICK_INTERVAL_SECONDS", "0.25"))
    SAVE_DEBOUNCE_SECONDS = float(os.getenv("SAVE_DEBOUNCE_SECONDS", "1.5"))
    CLEAR_DEBOUNCE_SECONDS = float(os.getenv("CLEAR_DEBOUNCE_SECONDS", "10"))
    COLLAPSE_STATUSES = _csv(os.getenv("COLLAPSE_STATUSES", "Pass"))

    # Session registries (idle sessions are closed after this many seconds)
    SESSION_IDLE_TTL_SECONDS = float(os.getenv("SESSION_IDLE_TTL_SECONDS", "1800"))

    # Logging (LOG_FORMAT: json or text; empty picks by environment)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")

    # Batch save
    BATCH_MAX_WORKERS = int(os.getenv("BATCH_MAX_WORKERS", "4"))

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    STORE_BASE_URL = "http://store.test"
    STORE_RETRY_MAX = 0
    SAVE_DEBOUNCE_SECONDS = 1.5
    CLEAR_DEBOUNCE_SECONDS = 10.0
    BATCH_MAX_WORKERS = 2


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    STORE_BASE_URL = os.getenv("STORE_BASE_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    def __init__(self):
        if not self.STORE_BASE_URL:
            raise RuntimeError("STORE_BASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
