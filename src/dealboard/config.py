"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class PlanConfig(BaseModel):
    """A sellable plan: billing variant id plus the checkout path used to build its buy URL."""

    variant_id: str
    checkout_url_path: str


DEFAULT_PLANS: list[PlanConfig] = [
    PlanConfig(variant_id="560079", checkout_url_path="e761a092-f967-4aa6-842a-17b36238ef9d"),
    PlanConfig(variant_id="560099", checkout_url_path="cf2a4077-b5ee-4c49-a7e1-540757f7f310"),
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Remote data authority (Supabase)
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Entitlement resolution
    ENTITLEMENT_TIMEOUT_SECONDS: float = 5.0
    ENTITLEMENT_FUNCTION: str = "get-lemon-squeezy-subscription-portal"
    PLANS_FUNCTION: str = "list-lemon-squeezy-plans"

    # Billing provider (Lemon Squeezy)
    LEMONSQUEEZY_API_KEY: str = ""
    LEMONSQUEEZY_API_BASE: str = "https://api.lemonsqueezy.com/v1"
    LEMONSQUEEZY_STORE_SUBDOMAIN: str = "ardev"
    LEMONSQUEEZY_WEBHOOK_SECRET: str = ""
    LEMONSQUEEZY_PLANS: list[PlanConfig] = DEFAULT_PLANS

    # Comma-separated origins, or "*"
    CORS_ALLOWED_ORIGINS: str = "*"

    @property
    def cors_origins(self) -> list[str]:
        raw = self.CORS_ALLOWED_ORIGINS.strip()
        if raw == "*":
            return ["*"]
        return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
