from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="GEUWAT_", extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "geuwat-settlement"
    log_level: str = "INFO"

    # Settlement calls run in a worker thread and are abandoned after this many seconds.
    settlement_timeout_seconds: float = Field(default=10.0, gt=0)

    # Caller rate limiting (sliding window)
    rate_limit_max_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    referral_code_max_attempts: int = Field(default=5, ge=1)

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()
