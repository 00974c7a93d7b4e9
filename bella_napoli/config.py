from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_host: str | None = Field(default=None, alias="DB_HOST")
    db_port: int = Field(default=1433, alias="DB_PORT")
    db_user: str | None = Field(default=None, alias="DB_USER")
    db_password: SecretStr | None = Field(default=None, alias="DB_PASSWORD")
    db_name: str = Field(default="bella_napoli", alias="DB_NAME")
    db_driver: str = Field(default="ODBC Driver 18 for SQL Server", alias="DB_DRIVER")
    db_trust_cert: bool = Field(default=True, alias="DB_TRUST_CERT")

    refresh_tick_seconds: int = Field(default=30, alias="REFRESH_TICK_SECONDS")
    refresh_full_threshold_ratio: float = Field(
        default=0.5, alias="REFRESH_FULL_THRESHOLD_RATIO"
    )
    refresh_max_failures: int = Field(default=5, alias="REFRESH_MAX_FAILURES")

    scheduler_coalesce: bool = Field(default=True, alias="SCHEDULER_COALESCE")
    scheduler_misfire_grace_seconds: int = Field(
        default=30, alias="SCHEDULER_MISFIRE_GRACE_SECONDS"
    )
    scheduler_timezone: str = Field(default="America/Chicago", alias="SCHEDULER_TIMEZONE")
    tasks_enabled: bool = Field(default=True, alias="TASKS_ENABLED")

    tax_rate: float = Field(default=0.0825, alias="TAX_RATE")
    seed_random_seed: int = Field(default=42, alias="SEED_RANDOM_SEED")
    seed_days: int = Field(default=120, alias="SEED_DAYS")


def load_settings(env_path: Path | None = None) -> Settings:
    env_file = env_path or (project_root() / ".env")
    if env_file.exists():
        load_dotenv(env_file, override=False)
    try:
        settings = Settings.model_validate(dict(os.environ))
    except ValidationError as exc:
        raise RuntimeError(
            "Invalid or missing environment variables. Copy `.env.example` to `.env` and edit it."
        ) from exc
    if not settings.database_url and not (
        settings.db_host and settings.db_user and settings.db_password
    ):
        raise RuntimeError(
            "Set DATABASE_URL, or DB_HOST/DB_USER/DB_PASSWORD for SQL Server. "
            "Copy `.env.example` to `.env` and edit it."
        )
    return settings
