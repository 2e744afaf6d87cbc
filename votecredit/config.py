# votecredit/config.py
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from .constants import CREDIT_SOURCE_KINDS, DEFAULT_CREDIT_SOURCE_PRIORITY


class Settings(BaseSettings):
    # --- Database ---
    database_url: str = "sqlite:///votecredit.db"
    database_echo: bool = False

    # --- Logging ---
    log_level: str = "INFO"
    log_json: bool = False

    # --- Credit policy ---
    # Order in which credit sources are tried when an election is activated.
    credit_source_priority: List[str] = list(DEFAULT_CREDIT_SOURCE_PRIORITY)
    minor_units_per_credit: int = 1
    unlimited_package_days: int = 30
    low_credit_threshold: int = 10

    # --- Storage contention ---
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.05

    # --- Payment gateway ---
    payment_webhook_secret: str | None = None
    payment_signature_header: str = "X-KopoKopo-Signature"
    default_phone_country_code: str = "254"

    # --- CORS ---
    cors_origins: List[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("credit_source_priority")
    @classmethod
    def _validate_priority(cls, value: List[str]) -> List[str]:
        normalized = [item.strip().lower() for item in value if item and item.strip()]
        unknown = [item for item in normalized if item not in CREDIT_SOURCE_KINDS]
        if unknown:
            raise ValueError(f"Unknown credit source(s): {', '.join(unknown)}")
        if len(set(normalized)) != len(normalized):
            raise ValueError("credit_source_priority must not repeat a source.")
        if not normalized:
            raise ValueError("credit_source_priority needs at least one source.")
        return normalized

    @field_validator("minor_units_per_credit", "storage_retry_attempts")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    return create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False}
        if database_url.startswith("sqlite")
        else {},
    )


Base = declarative_base()
