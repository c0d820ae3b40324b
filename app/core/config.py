from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "rto-sync"
    app_version: str = "0.1.0"
    environment: Literal["sandbox", "prod"] = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")
    xero_encryption_key: str = Field(..., alias="XERO_ENCRYPTION_KEY")

    xero_client_id: str = Field(..., alias="XERO_CLIENT_ID")
    xero_client_secret: str = Field(..., alias="XERO_CLIENT_SECRET")
    xero_redirect_uri: HttpUrl = Field(..., alias="XERO_REDIRECT_URI")
    xero_scopes: str = Field(
        default="offline_access accounting.transactions accounting.contacts accounting.settings",
        alias="XERO_SCOPES",
    )
    xero_default_account_code: str = Field(default="200", alias="XERO_DEFAULT_ACCOUNT_CODE")
    xero_default_payment_account_code: str = Field(
        default="101", alias="XERO_DEFAULT_PAYMENT_ACCOUNT_CODE"
    )
    xero_currency_code: str = Field(default="AUD", alias="XERO_CURRENCY_CODE")

    database_url: str = Field(..., alias="DATABASE_URL")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    webhook_max_concurrency: int = Field(default=5, alias="WEBHOOK_MAX_CONCURRENCY")
    sync_batch_limit: int = Field(default=100, alias="SYNC_BATCH_LIMIT")
    sync_batch_size: int = Field(default=5, alias="SYNC_BATCH_SIZE")
    sync_batch_delay_seconds: float = Field(default=1.0, alias="SYNC_BATCH_DELAY")

    filter_max_depth: int = Field(default=3, alias="FILTER_MAX_DEPTH")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
