"""Application configuration using Pydantic BaseSettings"""
import logging
from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# Setup logging
logger = logging.getLogger("config")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./donation_ledger.db"

    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"

    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "donation-ledger"
    OTEL_ENVIRONMENT: str = "development"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = "2025-12-15.clover"
    STRIPE_WEBHOOK_DEBUG: bool = False

    # Ledger defaults applied when event metadata carries no attribution
    DEFAULT_CAMPAIGN_SLUG: str = "sponsor-the-story"
    DEFAULT_CURRENCY: str = "usd"

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def lowercase_currency(cls, v):
        return v.strip().lower()

    @field_validator("DEFAULT_CAMPAIGN_SLUG")
    @classmethod
    def check_campaign_slug(cls, v):
        if not v or v.strip() == "":
            logger.error("DEFAULT_CAMPAIGN_SLUG is blank, falling back to 'sponsor-the-story'")
            return "sponsor-the-story"
        return v.strip()

@dataclass(frozen=True)
class AttributionDefaults:
    """Values substituted when no event source supplies a required field"""
    campaign_slug: str = "sponsor-the-story"
    currency: str = "usd"

# Create global settings instance
settings = Settings()

def get_attribution_defaults() -> AttributionDefaults:
    return AttributionDefaults(
        campaign_slug=settings.DEFAULT_CAMPAIGN_SLUG,
        currency=settings.DEFAULT_CURRENCY,
    )
