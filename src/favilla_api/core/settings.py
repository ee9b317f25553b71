from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./favilla.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_echo: bool = False

    # Ledger transactions
    ledger_statement_timeout_ms: int = 5000

    # Points award policy, the one place the award rate is defined
    loyalty_points_per_dollar: int = 1
    loyalty_bonus_threshold: float | None = None
    loyalty_bonus_multiplier: float = 1.0

    # Vouchers
    voucher_default_validity_days: int = 30
    voucher_code_length: int = 8
    voucher_code_max_attempts: int = 5

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Internal API security
    checkout_api_key: str = ""
    admin_api_key: str = ""

    # Storefront and admin dashboard origins
    frontend_url: str = "http://localhost:5173"
    cors_allowed_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Loyalty automation scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _parse_origin_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    @field_validator("loyalty_points_per_dollar")
    @classmethod
    def _validate_award_rate(cls, value: int) -> int:
        if value < 0:
            raise ValueError("loyalty_points_per_dollar must not be negative")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
