"""
Configuración de la aplicación
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App
    PROJECT_NAME: str = "DineFlow Billing"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./dineflow.db"

    # Trigger manual del sweep (cron externo o admin)
    ADMIN_API_TOKEN: Optional[str] = None

    # Facturación
    BILLING_CURRENCY: str = "USD"
    TRIAL_DAYS: int = 14

    # Pasarela: 'mock' o 'stripe'
    PAYMENT_GATEWAY: str = "mock"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_MIN: float = 0.5
    GATEWAY_BACKOFF_MAX: float = 8.0

    # Mock (desarrollo / tests)
    MOCK_GATEWAY_SUCCESS_RATE: float = 0.9
    MOCK_GATEWAY_SEED: Optional[int] = None
    MOCK_GATEWAY_LATENCY: float = 0.5
    MOCK_WEBHOOK_SECRET: str = "whsec_mock"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Sweep
    SWEEP_MAX_WORKERS: int = 5
    LEASE_TTL_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=True
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
