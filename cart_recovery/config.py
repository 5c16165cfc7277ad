from __future__ import annotations

from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    CART_RECOVERY_INTERNAL_API_TOKEN: str
    CART_RECOVERY_DB_URL: str = "sqlite:///./cart_recovery.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2024-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0

    CART_SYNC_DEFAULT_LIMIT: int = 50
    CART_SYNC_MAX_LIMIT: int = 250
    ACTIVITY_RECORDER_WORKERS: int = 1

    @field_validator("SHOPIFY_APP_API_SECRET", "CART_RECOVERY_INTERNAL_API_TOKEN")
    @classmethod
    def validate_secret(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("secret values must not be empty")
        return cleaned

    @field_validator("ACTIVITY_RECORDER_WORKERS")
    @classmethod
    def validate_workers(cls, value: int) -> int:
        if value < 0:
            raise ValueError("ACTIVITY_RECORDER_WORKERS must be >= 0")
        return value

    @model_validator(mode="after")
    def validate_sync_limits(self) -> "Settings":
        if self.CART_SYNC_MAX_LIMIT < 1:
            raise ValueError("CART_SYNC_MAX_LIMIT must be >= 1")
        if not 1 <= self.CART_SYNC_DEFAULT_LIMIT <= self.CART_SYNC_MAX_LIMIT:
            raise ValueError("CART_SYNC_DEFAULT_LIMIT must be between 1 and CART_SYNC_MAX_LIMIT")
        return self

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
