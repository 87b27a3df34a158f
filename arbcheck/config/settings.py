"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from arbcheck.errors import ConfigurationError


class AppConfig(BaseModel):
    """Reconciliation cycle configuration."""

    name: str = "arbcheck"
    enabled: bool = True
    check_interval_ms: int = Field(default=15_000, ge=1_000, le=3_600_000)
    disabled_poll_ms: int = Field(default=5_000, ge=100, le=60_000)
    # Grace window after the close offer expires before a filled open leg is broken
    expire_after_ms: int = Field(default=0, ge=0, le=86_400_000)
    # Grace window after the open offer expires before an unfilled trade is removed
    remove_after_ms: int = Field(default=60_000, ge=0, le=86_400_000)
    history_size: int = Field(default=100, ge=1, le=1000)
    # Percentages; 0 disables the threshold
    take_profit: float = Field(default=0.0, ge=0.0, le=100.0)
    stop_loss: float = Field(default=0.0, ge=0.0, le=100.0)


class LimiterConfig(BaseModel):
    """Pacing for one upstream API."""

    max_concurrent: int = Field(default=1, ge=1, le=10)
    min_interval_ms: int = Field(default=1000, ge=0, le=60_000)


class ExchangeConfig(BaseModel):
    """Exchange REST API configuration."""

    api_url: str = "https://api.biscoint.io/"
    timeout_ms: int = Field(default=15_000, ge=1_000, le=120_000)
    limiter: LimiterConfig = Field(
        default_factory=lambda: LimiterConfig(max_concurrent=1, min_interval_ms=500)
    )


class LedgerConfig(BaseModel):
    """GraphQL trade ledger configuration."""

    api_endpoint: str = "http://localhost:8080/v1/graphql"
    timeout_ms: int = Field(default=15_000, ge=1_000, le=120_000)
    trade_type: str = "arbitrage"
    limiter: LimiterConfig = Field(default_factory=LimiterConfig)


class RetryConfig(BaseModel):
    """Bounded exponential backoff for gateway calls."""

    max_attempts: int = Field(default=10, ge=1, le=20)
    base_delay_ms: int = Field(default=1000, ge=0, le=60_000)
    max_delay_ms: int = Field(default=5000, ge=0, le=300_000)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) cannot be below "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        return self


class NotificationsConfig(BaseModel):
    """Downstream notification configuration."""

    webhook_urls: list[str] = Field(default_factory=list)
    webhook_timeout_sec: int = Field(default=10, ge=1, le=60)
    outbox_path: str | None = "./data/outbox"
    notify_topic: str = "trade.notify"
    confirm_topic: str = "offer.confirm"


class MonitoringConfig(BaseModel):
    """Logging, metrics and operator API configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    logs_path: str | None = "./logs"
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1024, le=65535)


class Settings(BaseSettings):
    """Main application settings."""

    # API credentials from environment
    exchange_api_key: str = Field(default="", alias="EXCHANGE_API_KEY")
    exchange_api_secret: str = Field(default="", alias="EXCHANGE_API_SECRET")
    ledger_admin_secret: str = Field(default="", alias="LEDGER_ADMIN_SECRET")

    # Sub-configurations
    app: AppConfig = Field(default_factory=AppConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    def validate_for_run(self) -> list[str]:
        """Check settings needed to talk to real upstreams. Returns list of errors."""
        errors = []
        if not self.exchange_api_key:
            errors.append("EXCHANGE_API_KEY not set")
        if not self.exchange_api_secret:
            errors.append("EXCHANGE_API_SECRET not set")
        if not self.ledger_admin_secret:
            errors.append("LEDGER_ADMIN_SECRET not set")
        return errors

    def public_dict(self) -> dict:
        """Settings as a dict with credentials masked."""
        data = self.model_dump(mode="json")
        for key in ("exchange_api_key", "exchange_api_secret", "ledger_admin_secret"):
            if data.get(key):
                data[key] = "***"
        return data


def _format_validation_error(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Config file values
    2. Environment variables and the ``.env`` next to the config file
    3. Default values

    Credentials are never written to the config file, so they always come from
    the environment.

    Raises:
        ConfigurationError: if the file is unreadable or any value is out of bounds.
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with open(config_file) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError([f"{config_file}: {exc}"]) from exc
        if not isinstance(config_data, dict):
            raise ConfigurationError([f"{config_file}: top level must be a mapping"])

    env_path = config_file.parent / ".env"
    try:
        return Settings(**config_data, _env_file=env_path)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "app": {
            "name": "arbcheck",
            "enabled": True,
            "check_interval_ms": 15000,
            "disabled_poll_ms": 5000,
            "expire_after_ms": 0,
            "remove_after_ms": 60000,
            "history_size": 100,
            "take_profit": 0,
            "stop_loss": 0,
        },
        "exchange": {
            "api_url": "https://api.biscoint.io/",
            "timeout_ms": 15000,
            "limiter": {"max_concurrent": 1, "min_interval_ms": 500},
        },
        "ledger": {
            "api_endpoint": "http://localhost:8080/v1/graphql",
            "timeout_ms": 15000,
            "trade_type": "arbitrage",
            "limiter": {"max_concurrent": 1, "min_interval_ms": 1000},
        },
        "retry": {
            "max_attempts": 10,
            "base_delay_ms": 1000,
            "max_delay_ms": 5000,
            "multiplier": 2.0,
        },
        "notifications": {
            "webhook_urls": [],
            "outbox_path": "./data/outbox",
            "notify_topic": "trade.notify",
            "confirm_topic": "offer.confirm",
        },
        "monitoring": {
            "log_level": "INFO",
            "logs_path": "./logs",
            "metrics_enabled": True,
            "metrics_port": 9090,
            "api_enabled": True,
            "api_port": 8000,
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
