# ingest/app/config.py
import os
from datetime import timedelta
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def dsn_from_postgres_env() -> str:
    user = os.getenv("POSTGRES_USER", "tsdb")
    pwd = os.getenv("POSTGRES_PASSWORD", "tsdbpass")
    host = os.getenv("POSTGRES_HOST", "timescaledb")
    port = int(os.getenv("POSTGRES_PORT", 5432))
    db = os.getenv("POSTGRES_DB", "metrics")
    return f"postgresql://{user}:{pwd}@{host}:{port}/{db}"


class Settings(BaseSettings):
    """Ingest/dashboard service settings, read from ``PIPELINE_*`` variables."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", env_file=".env", extra="ignore")

    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    log_level: str = "INFO"

    # Store
    store_backend: Literal["timescaledb", "memory"] = "timescaledb"
    postgres_dsn: Optional[str] = None
    pool_min_size: int = 1
    pool_max_size: int = 10
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Dashboard windows
    active_lookback_seconds: float = Field(default=30.0, gt=0)
    details_lookback_seconds: float = Field(default=15.0, gt=0)
    status_grace_seconds: float = Field(default=5.0, ge=0)

    # Ingestion
    process_threshold_percent: float = 10.0

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v

    @property
    def dsn(self) -> str:
        return self.postgres_dsn or dsn_from_postgres_env()

    @property
    def active_lookback(self) -> timedelta:
        return timedelta(seconds=self.active_lookback_seconds)

    @property
    def details_lookback(self) -> timedelta:
        return timedelta(seconds=self.details_lookback_seconds)

    @property
    def status_grace(self) -> timedelta:
        return timedelta(seconds=self.status_grace_seconds)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
