"""Application configuration settings."""
from __future__ import annotations

import os
from datetime import timedelta
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("ESCROWPAY_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the escrow payment service."""

    app_env: str = ENV
    database_url: str = "sqlite:///escrowpay.db"
    APP_URL: str = "http://localhost:3000"
    ADMIN_API_KEY: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ADMIN_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Paystack ------------------------------------------------------------
    PAYSTACK_SECRET_KEY: str | None = None
    PAYSTACK_PUBLIC_KEY: str | None = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 30.0

    # --- Escrow policy -------------------------------------------------------
    ESCROW_HOLD_DAYS: int = 7
    DEFAULT_CURRENCY: str = "GHS"
    DEFAULT_MERCHANT_ACCOUNT: str = "default-merchant-account"
    TRANSFER_SOURCE: str = "balance"
    AUTO_RELEASE_ORDER_STATUS: str = "delivered"
    # an unanswered transfer or refund counts as in flight for this long
    SETTLEMENT_GRACE_SECONDS: int = 300

    # --- Scheduler -----------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    AUTO_RELEASE_INTERVAL_MINUTES: int = 15
    EXPIRE_PENDING_INTERVAL_MINUTES: int = 60
    RECONCILE_TRANSFERS_INTERVAL_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("PAYSTACK_SECRET_KEY", "ADMIN_API_KEY")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _grace_outlasts_gateway_timeout(self) -> "Settings":
        if self.SETTLEMENT_GRACE_SECONDS <= self.PAYSTACK_TIMEOUT_SECONDS:
            raise ValueError("SETTLEMENT_GRACE_SECONDS must exceed PAYSTACK_TIMEOUT_SECONDS.")
        return self


class EscrowConfig(BaseModel):
    """Explicit policy handed to the escrow payment manager."""

    hold_window: timedelta = timedelta(days=7)
    default_currency: str = "GHS"
    default_merchant_account: str = "default-merchant-account"
    transfer_source: str = "balance"
    auto_release_order_status: str = "delivered"
    settlement_grace: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EscrowConfig":
        return cls(
            hold_window=timedelta(days=settings.ESCROW_HOLD_DAYS),
            default_currency=settings.DEFAULT_CURRENCY,
            default_merchant_account=settings.DEFAULT_MERCHANT_ACCOUNT,
            transfer_source=settings.TRANSFER_SOURCE,
            auto_release_order_status=settings.AUTO_RELEASE_ORDER_STATUS,
            settlement_grace=timedelta(seconds=settings.SETTLEMENT_GRACE_SECONDS),
        )


class AppInfo(BaseModel):
    name: str = "escrowpay"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "Settings",
    "EscrowConfig",
    "AppInfo",
    "settings",
    "get_settings",
]
