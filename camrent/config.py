"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./camrent.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    mpesa_base_url: str = Field(
        default="https://sandbox.safaricom.co.ke",
        description="Base URL of the M-Pesa Daraja API.",
    )
    mpesa_consumer_key: str = Field(default="", description="Daraja consumer key")
    mpesa_consumer_secret: str = Field(default="", description="Daraja consumer secret")
    mpesa_shortcode: str = Field(default="", description="Paybill/till business short code")
    mpesa_passkey: str = Field(default="", description="Lipa Na M-Pesa online passkey")
    mpesa_callback_url: str = Field(default="", description="Public URL the gateway posts results to")
    mpesa_callback_token: str = Field(
        default="callback-token",
        description="Shared token expected on the callback URL query string.",
    )
    mpesa_timeout_seconds: float = Field(default=30.0, description="Timeout for gateway HTTP calls")

    accounts_service_port: int = 8001
    inventory_service_port: int = 8002
    bookings_service_port: int = 8003
    payments_service_port: int = 8004
    reports_service_port: int = 8005


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
