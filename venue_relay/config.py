"""
Venue Relay — Configuration
All settings loaded from environment variables.
"""
from pydantic_settings import BaseSettings
from typing import Literal, Optional


class Settings(BaseSettings):
    # --- Database ---
    # In production, use pooler URL for connection pooling
    DATABASE_URL_POOLER: str
    # Direct URL — only for migrations (Alembic)
    DATABASE_URL: str

    # Connection pool limits per process (keep low — workers and API share DB)
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5

    # --- Sentry ---
    SENTRY_DSN: Optional[str] = None

    # --- Telegram ---
    TG_TOKEN: str
    TG_WEBHOOK_SECRET: str = ""
    TG_MODE: Literal["webhook", "long_polling"] = "long_polling"
    TG_WEBHOOK_PATH: str = "/telegram/webhook"
    TG_LONG_POLL_TIMEOUT: int = 25
    WEBHOOK_BASE_URL: str = ""

    # Used as service_id in idempotency keys
    SERVICE_ID: str = "venue"

    # --- Inbound worker ---
    INBOUND_POLL_INTERVAL_MS: int = 500
    INBOUND_BATCH_SIZE: int = 10
    INBOUND_MAX_ATTEMPTS: int = 5
    INBOUND_VISIBILITY_TIMEOUT_S: int = 120
    INBOUND_BASE_BACKOFF_MS: int = 500
    INBOUND_MAX_BACKOFF_MS: int = 60_000

    # --- Outbox worker ---
    OUTBOX_POLL_INTERVAL_MS: int = 500
    OUTBOX_BATCH_SIZE: int = 25
    OUTBOX_MAX_CONCURRENCY: int = 4
    OUTBOX_MAX_ATTEMPTS: int = 10
    OUTBOX_VISIBILITY_TIMEOUT_S: int = 30
    OUTBOX_BASE_BACKOFF_S: float = 1.0
    OUTBOX_MAX_BACKOFF_S: float = 60.0
    BACKOFF_JITTER: float = 0.2

    # --- Local rate limiter ---
    # Bot API tolerates ~30 msg/s globally and ~1 msg/s per chat
    RATE_LIMIT_PER_SECOND: int = 25
    RATE_LIMIT_PER_CHAT_INTERVAL_MS: int = 1000
    RATE_LIMIT_MAX_WAIT_S: float = 10.0

    # --- Maintenance ---
    IDEMPOTENCY_RETENTION_DAYS: int = 30

    # --- App ---
    DEBUG: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
