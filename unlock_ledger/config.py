from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    storage_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./unlock_ledger.db"

    code_length: int = Field(default=8, ge=4)
    code_group_size: int = Field(default=4, ge=0)
    code_max_attempts: int = Field(default=10, ge=1)
    code_validity_days: int = Field(default=7, ge=1)

    default_page_limit: int = 50
    max_page_limit: int = 100

    idempotency_ttl_seconds: int = 24 * 60 * 60
    default_currency: str = "NPR"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="UNLOCK_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
