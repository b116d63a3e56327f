"""Runtime settings loaded from defaults, an optional YAML file and the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

CONFIG_ENV = "NFSE_SYNC_CONFIG"

ENV_VARS: dict[str, str] = {
    "processor_interval": "JOB_PROCESSOR_INTERVAL",
    "batch_size": "JOB_BATCH_SIZE",
    "retry_base_backoff": "RETRY_BASE_BACKOFF",
    "max_retries": "MAX_RETRIES",
    "running_job_timeout": "RUNNING_JOB_TIMEOUT",
    "sync_discovery_interval": "SYNC_DISCOVERY_INTERVAL",
    "credential_cleanup_interval": "CREDENTIAL_CLEANUP_INTERVAL",
    "job_cleanup_interval": "JOB_CLEANUP_INTERVAL",
    "job_retention_days": "JOB_RETENTION_DAYS",
    "reaper_interval": "REAPER_INTERVAL",
    "storage_root": "STORAGE_ROOT",
    "job_db_path": "JOB_DB_PATH",
    "tenants_file": "TENANTS_FILE",
    "fiscal_api_base_url": "FISCAL_API_BASE_URL",
    "fiscal_api_timeout": "FISCAL_API_TIMEOUT",
    "fetch_max_pages": "FETCH_MAX_PAGES",
    "fetch_page_delay": "FETCH_PAGE_DELAY",
    "log_level": "LOG_LEVEL",
    "scheduler_enabled": "ENABLE_AUTO_SYNC",
    "cors_origins": "API_CORS_ORIGINS",
}


class ConfigError(ValueError):
    """Raised when the configuration file or environment holds invalid values."""


class Settings(BaseModel):
    """Tunables for the processor, scheduler, storage and fiscal API client.

    Durations are expressed in seconds.
    """

    processor_interval: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=5, ge=1)
    retry_base_backoff: float = Field(default=60.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    running_job_timeout: float = Field(default=30 * 60.0, gt=0)

    sync_discovery_interval: float = Field(default=60 * 60.0, gt=0)
    credential_cleanup_interval: float = Field(default=24 * 60 * 60.0, gt=0)
    job_cleanup_interval: float = Field(default=7 * 24 * 60 * 60.0, gt=0)
    job_retention_days: int = Field(default=30, ge=1)
    reaper_interval: float = Field(default=5 * 60.0, gt=0)
    scheduler_enabled: bool = True

    storage_root: str = "storage"
    job_db_path: str | None = None
    tenants_file: str | None = None

    fiscal_api_base_url: str | None = None
    fiscal_api_timeout: float = Field(default=30.0, gt=0)
    fetch_max_pages: int = Field(default=10, ge=1)
    fetch_page_delay: float = Field(default=0.0, ge=0)

    log_level: str = "INFO"
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("job_db_path", "tenants_file", "fiscal_api_base_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fp:
            data = yaml.safe_load(fp) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return data


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build :class:`Settings`; environment variables win over the YAML file."""

    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    config_path = path or env.get(CONFIG_ENV)
    if config_path:
        values.update(_read_yaml(Path(config_path).expanduser()))

    for field_name, env_name in ENV_VARS.items():
        raw = env.get(env_name)
        if raw is not None and raw != "":
            values[field_name] = raw

    try:
        return Settings.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
