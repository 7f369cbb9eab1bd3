"""Service settings loaded from the environment (or a local .env file)."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Paystack
    paystack_secret_key: str = Field(default="", description="Paystack secret key (sk_test_... / sk_live_...)")
    paystack_base_url: str = Field(default="https://api.paystack.co", description="Paystack API base URL")
    gateway_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for a single gateway call")
    default_callback_url: str = Field(
        default="http://localhost:5173/payment/callback",
        description="Where the hosted checkout returns the buyer when no callback is given",
    )

    # Settlement
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    default_commission_rate: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)

    # Application
    app_name: str = Field(default="course-settlement")
    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    allowed_origins: str = Field(
        default="*", description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
