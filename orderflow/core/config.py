from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from typing import List, Literal, Optional
import json


class Settings(BaseSettings):
    # Project Info
    PROJECT_NAME: str = "Orderflow Fulfillment API"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str

    # Security (tokens are issued by the external auth service, we only decode them)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Payment provider webhook
    PAYMENT_WEBHOOK_SECRET: str = ""

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
    ]

    # Email
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    EMAILS_FROM_NAME: str = "Orderflow"
    EMAILS_FROM_ORDERS: str = ""
    EMAILS_FROM_SHIPPING: str = ""
    NOTIFICATIONS_ENABLED: bool = True

    # Environment
    ENVIRONMENT: str = "development"
    ENV: Optional[str] = Field(default=None)

    DEBUG: bool = False

    # Monitoring (Optional - Add to .env for production)
    SENTRY_DSN: str = ""

    # Celery & Redis (Task Queue)
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Rate limiting (counters live in an external store in production)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Pricing
    CURRENCY: str = "USD"
    TAX_RATE: float = 0.0
    FREE_SHIPPING_THRESHOLD: float = 5000.0
    ITEM_WEIGHT_KG: float = 0.5
    SHIPPING_LIGHT_CHARGE: float = 200.0   # <= 1 kg
    SHIPPING_MEDIUM_CHARGE: float = 350.0  # <= 5 kg
    SHIPPING_HEAVY_CHARGE: float = 500.0

    # Cart
    MAX_ITEM_QUANTITY: int = 10
    COUPON_SOURCE: Literal["static", "database"] = "database"
    ABANDONED_CART_DAYS: int = 30

    # Orders
    ORDER_NUMBER_PREFIX: str = "ORD"
    ORDER_NUMBER_MAX_ATTEMPTS: int = 10
    RESERVE_STOCK_AT_CHECKOUT: bool = True
    PENDING_ORDER_TTL_MINUTES: int = 30
    DEFAULT_DELIVERY_DAYS: int = 5

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        return value.lower().strip()

    @field_validator("ORDER_NUMBER_PREFIX")
    @classmethod
    def validate_order_prefix(cls, value: str) -> str:
        value = value.strip().upper()
        if not value.isalpha():
            raise ValueError("ORDER_NUMBER_PREFIX must be alphabetic")
        return value

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, value):
        if isinstance(value, str):
            raw = value.strip()
            if raw.startswith("["):
                try:
                    return json.loads(raw)
                except json.JSONDecodeError as exc:
                    raise ValueError("BACKEND_CORS_ORIGINS must be valid JSON or comma-separated") from exc
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def validate_production_settings(self):
        if self.ENVIRONMENT == "production":
            normalized_secret = (self.SECRET_KEY or "").strip()
            if len(normalized_secret) < 32 or "your-secret-key-here" in normalized_secret.lower():
                raise ValueError("SECRET_KEY must be at least 32 chars and not use placeholders in production")
            if not self.PAYMENT_WEBHOOK_SECRET:
                raise ValueError("PAYMENT_WEBHOOK_SECRET must be set in production")
            if self.RATE_LIMIT_STORAGE_URI.startswith("memory://"):
                raise ValueError("RATE_LIMIT_STORAGE_URI must point to a shared store in production")
        return self

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
