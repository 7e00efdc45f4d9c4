# backend/slotpay/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "test", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    # Persistence
    database_url: str = Field(
        default="sqlite+pysqlite:///./slotpay.db",
        description="SQLAlchemy URL for the ledger database",
    )
    database_pool_size: int = Field(default=5, ge=1)
    database_max_overflow: int = Field(default=5, ge=0)

    # Redis (Celery broker + optional slot claim mutex)
    redis_url: str = "redis://localhost:6379"
    celery_broker_url: str | None = Field(
        default=None,
        description="Celery broker override; falls back to redis_url",
    )

    # Payment gateway
    gateway_base_url: str = Field(
        default="https://api.razorpay.com/v1",
        description="Base URL of the payment gateway REST API",
    )
    gateway_key_id: str = Field(default="", description="Public key id handed to clients")
    gateway_key_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret used for order auth and payment signatures",
    )
    gateway_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Secret used to sign gateway webhook bodies",
    )
    gateway_fake: bool = Field(
        default=False,
        description="Use the in-memory gateway instead of the live API",
    )
    gateway_timeout_seconds: float = Field(default=15.0, gt=0)
    default_currency: str = Field(default="INR", min_length=3, max_length=3)
    receipt_prefix: str = Field(default="rcpt_")

    # Slot claiming
    reservation_ttl_minutes: int = Field(
        default=12,
        ge=1,
        le=60,
        description="How long a reservation holds a slot while payment is in flight",
    )
    slot_claim_redis_enabled: bool = Field(
        default=False,
        description="Take a short Redis mutex on (provider, start, end) before claiming",
    )
    slot_claim_ttl_seconds: int = Field(default=30, ge=1)

    # Refunds
    refund_reason_min_length: int = Field(default=10, ge=1)
    refund_reason_max_length: int = Field(default=1000, ge=1)
    refund_poll_batch_size: int = Field(default=50, ge=1)

    # Outbox
    outbox_batch_size: int = Field(default=25, ge=1)
    outbox_max_attempts: int = Field(default=8, ge=1)
    outbox_backoff_seconds: int = Field(default=30, ge=1)

    audit_enabled: bool = Field(default=True, description="Persist audit rows for transitions")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
logger.info(
    "[CONFIG] Gateway configuration: environment=%s gateway_fake=%s base_url=%s",
    settings.environment,
    settings.gateway_fake,
    settings.gateway_base_url,
)
