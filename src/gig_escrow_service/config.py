"""
Configuration management for the gig escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
Secrets may also be supplied through environment variables, which
override the file.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"

_SECRET_FIELDS: frozenset[str] = frozenset({"api_key", "wallet_private_seed", "key"})

# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PI_API_KEY": ("payment_network", "api_key"),
    "PI_WALLET_PRIVATE_SEED": ("payment_network", "wallet_private_seed"),
    "PI_SANDBOX": ("payment_network", "sandbox"),
    "DATASTORE_URL": ("datastore", "url"),
    "DATASTORE_KEY": ("datastore", "key"),
}


def _require_non_blank(value: str, name: str) -> str:
    if not value.strip():
        msg = f"{name} must not be empty"
        raise ValueError(msg)
    return value


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


class DatabaseConfig(BaseModel):
    """Local SQLite database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class PaymentNetworkConfig(BaseModel):
    """Payment network API configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    api_key: str
    wallet_private_seed: str
    sandbox: bool
    timeout_seconds: int
    max_retries: int
    retry_backoff_seconds: float

    @field_validator("api_key")
    @classmethod
    def api_key_must_not_be_empty(cls, value: str) -> str:
        """Reject a blank API key at startup."""
        return _require_non_blank(value, "payment_network.api_key")

    @field_validator("wallet_private_seed")
    @classmethod
    def seed_must_not_be_empty(cls, value: str) -> str:
        """Reject a blank wallet seed at startup."""
        return _require_non_blank(value, "payment_network.wallet_private_seed")

    @field_validator("max_retries")
    @classmethod
    def max_retries_must_be_non_negative(cls, value: int) -> int:
        """Negative retry counts make no sense."""
        if value < 0:
            msg = "payment_network.max_retries must be >= 0"
            raise ValueError(msg)
        return value


class DatastoreConfig(BaseModel):
    """Hosted datastore credentials (URL/key pair)."""

    model_config = ConfigDict(extra="forbid")
    url: str
    key: str

    @field_validator("url", "key")
    @classmethod
    def must_not_be_empty(cls, value: str) -> str:
        """Reject blank datastore credentials at startup."""
        return _require_non_blank(value, "datastore credential")


class HandshakeConfig(BaseModel):
    """Client-driven payment handshake configuration."""

    model_config = ConfigDict(extra="forbid")
    timeout_seconds: float
    lock_grace_seconds: float

    @field_validator("timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, value: float) -> float:
        """A non-positive timeout would resolve every handshake immediately."""
        if value <= 0:
            msg = "handshake.timeout_seconds must be > 0"
            raise ValueError(msg)
        return value


class PayoutConfig(BaseModel):
    """Worker payout configuration."""

    model_config = ConfigDict(extra="forbid")
    memo: str


class CorsConfig(BaseModel):
    """CORS configuration for the deployed front-end."""

    model_config = ConfigDict(extra="forbid")
    allowed_origin: str


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


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
    database: DatabaseConfig
    payment_network: PaymentNetworkConfig
    datastore: DatastoreConfig
    handshake: HandshakeConfig
    payout: PayoutConfig
    cors: CorsConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path (CONFIG_PATH or ./config.yaml)."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def _apply_environment_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, field) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        section_data = raw.setdefault(section, {})
        if not isinstance(section_data, dict):
            msg = f"Config section '{section}' must be a mapping"
            raise ValueError(msg)
        if field == "sandbox":
            section_data[field] = value.strip().lower() in {"1", "true", "yes"}
        else:
            section_data[field] = value
    return raw


def load_settings(config_path: Path) -> Settings:
    """Load and validate settings from a YAML file plus environment overrides."""
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**_apply_environment_overrides(raw))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: REDACTION_MARKER if key in _SECRET_FIELDS else _redact(value)
            for key, value in data.items()
        }
    return data


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
