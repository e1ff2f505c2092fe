import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class MissingCredentialsError(Exception):
    """A rule needs an external API whose credentials are not configured."""


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/ppc_automation"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""

    # Amazon Ads API (access token is supplied; refresh happens elsewhere)
    ads_api_client_id: str = ""
    ads_api_access_token: str = ""
    ads_api_region: str = "na"

    # Selling Partner API (listings, pricing, catalog)
    sp_api_access_token: str = ""
    sp_api_region: str = "na"
    sp_api_marketplace_id: str = "ATVPDKIKX0DER"
    sp_api_seller_id: str = ""  # fallback when the pricing response omits SellerId
    sp_api_currency: str = "USD"

    # Relevance classifier: "provider:model", keys are comma-separated pools
    ai_model: str = "openai:gpt-4o-mini"
    openai_api_keys: str = ""
    anthropic_api_keys: str = ""
    ai_batch_size: int = 20
    ai_batch_delay_seconds: float = 1.0
    ai_max_retries: int = 3  # retries after the first call, like ads_api_max_retries
    ai_retry_initial_delay_seconds: float = 1.0

    # Scheduler
    automation_timezone: str = "America/Los_Angeles"
    automation_tick_seconds: int = 60  # 0 = no in-process timer, use /api/cron/automation/tick
    budget_reset_time: str = "23:55"

    # Ads API request shaping
    ads_api_chunk_size: int = 100
    ads_api_fan_out: int = 3
    ads_api_chunk_delay_seconds: float = 0.5
    ads_api_max_retries: int = 4
    ads_api_retry_base_delay_seconds: float = 1.0
    ads_api_retry_max_delay_seconds: float = 30.0

    # Price rules
    price_sku_delay_seconds: float = 1.5
    listing_not_found_retry_seconds: float = 60.0

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.cron_secret:
                raise ValueError(
                    "CRON_SECRET must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def openai_key_pool(self) -> list[str]:
        return [k.strip() for k in self.openai_api_keys.split(",") if k.strip()]

    @property
    def anthropic_key_pool(self) -> list[str]:
        return [k.strip() for k in self.anthropic_api_keys.split(",") if k.strip()]

    @property
    def budget_reset_hour_minute(self) -> tuple[int, int]:
        hour, _, minute = self.budget_reset_time.partition(":")
        return int(hour), int(minute or 0)


@lru_cache
def get_settings() -> Settings:
    return Settings()
