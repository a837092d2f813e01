# paycore/config/config.py
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Import the GSM loader - this runs at import time and sets env vars
from paycore.config.gsm_settings import gsm_secrets  # noqa: F401


class Settings(BaseSettings):
    PROJECT_NAME: str = "paycore"
    API_V1_PREFIX: str = "/api/v1"

    # Full URL wins; otherwise built from POSTGRES_*; otherwise local SQLite
    DATABASE_URL: str = ""
    POSTGRES_SERVER: str = ""
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: Optional[int] = 5432
    POSTGRES_SSL: bool = False

    RABBITMQ_QUEUE: str = "payment_events"
    RABBITMQ_USER: str = ""
    RABBITMQ_PASSWORD: str = ""
    RABBITMQ_HOST: str = ""
    RABBITMQ_PORT: int = 5671
    RABBITMQ_VHOST: str = ""

    # Gateways
    PAYMENTS_DEFAULT_GATEWAY: str = "fake"
    PAYMENTS_DEFAULT_CURRENCY: str = "USD"
    PAYMENTS_PLATFORM_PERCENT: float = 0.0
    PAYMENTS_PLATFORM_FIXED: int = 0
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    PAYMENTS_FAKE_INTENT_STATUS: str = "requires_confirmation"
    PAYMENTS_FAKE_CAPTURE_STATUS: str = "captured"
    PAYMENTS_FAKE_REFUND_STATUS: str = "succeeded"
    PAYMENTS_FAKE_SUBSCRIPTION_STATUS: str = "active"
    PAYMENTS_FAKE_CLIENT_SECRET: Optional[str] = None

    STRIPE_SECRET_KEY: str = ""

    # Webhooks: {"ccbill": "secret", "stripe": "whsec_..."}
    WEBHOOK_SECRETS: Dict[str, str] = {}
    WEBHOOK_VERIFY_SIGNATURE: bool = True

    SUBSCRIPTION_GRACE_DAYS: int = 3

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """Get SQLAlchemy database URI"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.POSTGRES_SERVER:
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        return "sqlite+aiosqlite:///./paycore.db"

    @property
    def RABBITMQ_URL(self) -> Optional[str]:
        if not self.RABBITMQ_HOST:
            return None
        return f"amqps://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/{self.RABBITMQ_VHOST}"

    def gateway_config(self) -> Dict[str, dict]:
        return {
            "fake": {
                "driver": "fake",
                "options": {
                    "intent_status": self.PAYMENTS_FAKE_INTENT_STATUS,
                    "capture_status": self.PAYMENTS_FAKE_CAPTURE_STATUS,
                    "refund_status": self.PAYMENTS_FAKE_REFUND_STATUS,
                    "subscription_status": self.PAYMENTS_FAKE_SUBSCRIPTION_STATUS,
                    "client_secret": self.PAYMENTS_FAKE_CLIENT_SECRET,
                },
            },
            "stripe": {
                "driver": "stripe",
                "options": {"api_key": self.STRIPE_SECRET_KEY},
            },
        }

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file_encoding='utf-8'
    )


# Create settings instance
settings = Settings()
