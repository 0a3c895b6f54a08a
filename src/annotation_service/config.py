"""
Configuration management for the annotation service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "token", "password", "private_key")


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or invalid."""


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class SessionsConfig(BaseModel):
    """Actor session token verification configuration."""

    model_config = ConfigDict(extra="forbid")
    public_key_path: str
    issuer: str


class RowStoreConfig(BaseModel):
    """Remote spreadsheet/drive connection configuration."""

    model_config = ConfigDict(extra="forbid")
    sheets_base_url: str
    drive_base_url: str
    timeout_seconds: int
    default_retry_after_seconds: int


class WorkspaceConfig(BaseModel):
    """Identifiers of the task source and the spreadsheets the engine writes."""

    model_config = ConfigDict(extra="forbid")
    task_file_id: str
    annotation_spreadsheet_id: str
    final_dataset_spreadsheet_id: str
    users_spreadsheet_id: str


class CacheConfig(BaseModel):
    """Per-resource cache TTLs."""

    model_config = ConfigDict(extra="forbid")
    task_rows_ttl_seconds: float
    row_ids_ttl_seconds: float
    annotations_ttl_seconds: float
    worker_languages_ttl_seconds: float
    finalized_ids_ttl_seconds: float


class PaymentsConfig(BaseModel):
    """Payment-figure recomputation configuration."""

    model_config = ConfigDict(extra="forbid")
    per_row_rate: int
    per_translation_rate: int
    debounce_seconds: float


class BackgroundConfig(BaseModel):
    """Background task retry configuration."""

    model_config = ConfigDict(extra="forbid")
    max_attempts: int
    retry_delay_seconds: float


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    request: RequestConfig
    sessions: SessionsConfig
    row_store: RowStoreConfig
    workspace: WorkspaceConfig
    cache: CacheConfig
    payments: PaymentsConfig
    background: BackgroundConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    override = os.environ.get("CONFIG_PATH")
    if override:
        return Path(override)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Read and validate a YAML configuration file."""
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigurationError(msg)

    try:
        raw = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        msg = f"Configuration file is not valid YAML: {config_path}"
        raise ConfigurationError(msg) from exc

    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ConfigurationError(msg)

    try:
        return Settings.model_validate(raw)
    except PydanticValidationError as exc:
        msg = f"Invalid configuration in {config_path}: {exc}"
        raise ConfigurationError(msg) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS)
            else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
