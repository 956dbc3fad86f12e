"""
Configuration Management for VaultPay

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.

Settings are only READ here. They are handed to the store, gateway and
engines at construction time by vaultpay.orchestrator; no engine
reaches for a global client.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    backend: Literal["memory", "sql"] = Field(
        default="sql",
        description="Which ledger store implementation to build"
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./vaultpay.db",
        description="Async SQLAlchemy URL for the sql backend"
    )
    echo_sql: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    unit_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Upper bound on one unit of work, gateway latency excluded"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for operations that are safe to retry on StoreTimeout"
    )


class PaymentSettings(BaseSettings):
    """Payment engine and gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT_",
        extra="ignore"
    )

    max_transaction_amount: Decimal = Field(
        default=Decimal("100000.00"),
        gt=0,
        decimal_places=2,
        description="Per-payment ceiling"
    )

    # Simulated gateway
    gateway_min_latency: float = Field(default=0.5, ge=0.0)
    gateway_max_latency: float = Field(default=2.0, ge=0.0)
    gateway_success_rate: float = Field(
        default=0.95,
        ge=0.0,
        le=1.0,
        description="Probability that a simulated charge succeeds"
    )
    gateway_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts when the gateway is unreachable"
    )

    @model_validator(mode="after")
    def validate_latency_range(self) -> "PaymentSettings":
        if self.gateway_max_latency < self.gateway_min_latency:
            raise ValueError("gateway_max_latency cannot be below gateway_min_latency")
        return self


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration for spending insights."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=300,
        ge=50,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Model temperature"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    recent_transactions_limit: int = Field(
        default=10,
        ge=1,
        le=100,
        description="How many recent transactions summaries include"
    )
    insight_window_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Look-back window for spending insights"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def payments(self) -> PaymentSettings:
        return PaymentSettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with a
    `{setting_name}_error` entry for each failure.
    Useful for startup checks.
    """
    results: dict = {}
    settings = get_settings()

    for name in ("ledger", "payments", "gemini", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results


def gemini_settings_or_none() -> Optional[GeminiSettings]:
    """Gemini settings, or None when no API key is configured."""
    try:
        return get_settings().gemini
    except ValueError:
        return None
