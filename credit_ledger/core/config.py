from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models.schemas import CreditPackageSpec


class Settings(BaseSettings):
    app_name: str = "Credit Ledger API"
    database_url: str = "sqlite:///credit_ledger.db"
    log_level: str = "INFO"

    # Pricing
    credit_per_minute: int = 10
    translation_credit_per_minute: int = 5

    # Reservations
    reservation_ttl_minutes: int = 30
    anonymous_free_credits: int = 0

    # Expiry sweeper
    sweeper_enabled: bool = True
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 100

    # Statements
    history_page_size: int = 20
    history_max_page_size: int = 100

    # Package catalogue, JSON in CREDITS_CREDIT_PACKAGES
    credit_packages: list[CreditPackageSpec] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CREDITS_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
