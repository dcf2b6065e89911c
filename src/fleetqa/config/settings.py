"""Configuration settings and loading."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleetqa.errors import ConfigValidationError, ErrorContext

LOG_FORMATS = ("human", "json")

BASE_PATH_DEGRADED_MESSAGE = (
    "Elastic Defend requires Elastic Agent be installed at the default installation path"
)
UNPRIVILEGED_DEGRADED_MESSAGE = "Elastic Defend requires Elastic Agent be running as root"
UNPRIVILEGED_DEGRADED_MESSAGE_WINDOWS = (
    "Elastic Defend requires Elastic Agent be running as Administrator or SYSTEM"
)


class HarnessConfig(BaseSettings):
    """Configuration for a fleetqa harness run.

    Time values are seconds. Every time-dependent operation reads its budget
    from here; nothing is hard-coded in the orchestrator.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETQA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Timing
    scenario_timeout: float = 600.0
    convergence_timeout: float = 120.0
    convergence_interval: float = 1.0
    degraded_timeout: float = 120.0
    degraded_interval: float = 10.0
    cleanup_timeout: float = 60.0
    connect_timeout: float = 30.0

    # Identity of the managed sub-service
    identity_token: str = "endpoint"
    residual_token: str = "Endpoint"

    # Integration and policy
    package_name: str = "endpoint"
    package_version: str = "8.11.0"
    integration_name_prefix: str = "Defend"
    policy_name_prefix: str = "test-policy"
    policy_namespace: str = "default"
    monitoring_enabled: list[str] = Field(default_factory=lambda: ["logs", "metrics"])

    # Diagnostics bundle layout
    bundle_component_dir: str = "components/endpoint-default"
    bundle_logs_dir: str = "logs/services"
    bundle_log_pattern: str = "endpoint-*.log"

    # Expected degraded messages
    base_path_message: str = BASE_PATH_DEGRADED_MESSAGE
    unprivileged_message: str = UNPRIVILEGED_DEGRADED_MESSAGE
    unprivileged_message_windows: str = UNPRIVILEGED_DEGRADED_MESSAGE_WINDOWS

    # Fleet management API
    fleet_url: str = "http://localhost:5601"
    fleet_username: str | None = None
    fleet_password: str | None = None
    fleet_api_key: str | None = None
    fleet_verify_ssl: bool = True
    fleet_request_timeout: float = 30.0

    # Output
    log_format: str = "human"
    verbose: bool = False

    @field_validator(
        "scenario_timeout",
        "convergence_timeout",
        "convergence_interval",
        "degraded_timeout",
        "degraded_interval",
        "cleanup_timeout",
        "connect_timeout",
        "fleet_request_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float, info: ValidationInfo) -> float:
        if v <= 0:
            raise ConfigValidationError(
                message=f"{info.field_name} must be positive, got {v}",
                field=info.field_name,
                value=v,
            )
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in LOG_FORMATS:
            raise ConfigValidationError(
                message=f"Invalid log format: {v!r}. Valid: {', '.join(LOG_FORMATS)}",
                field="log_format",
                value=v,
                context=ErrorContext(extra={"valid_formats": list(LOG_FORMATS)}),
            )
        return v

    @field_validator("fleet_url")
    @classmethod
    def validate_fleet_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ConfigValidationError(
                message="fleet_url must be an http(s) URL",
                field="fleet_url",
                value=v,
            )
        return v.rstrip("/")

    @field_validator("identity_token", "residual_token")
    @classmethod
    def validate_token(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            raise ConfigValidationError(
                message=f"{info.field_name} must not be empty",
                field=info.field_name,
                value=v,
            )
        return v

    @model_validator(mode="after")
    def validate_intervals(self) -> HarnessConfig:
        pairs = (
            ("convergence_interval", "convergence_timeout"),
            ("degraded_interval", "degraded_timeout"),
        )
        for interval_field, timeout_field in pairs:
            interval = getattr(self, interval_field)
            timeout = getattr(self, timeout_field)
            if interval > timeout:
                raise ConfigValidationError(
                    message=f"{interval_field} ({interval}) exceeds {timeout_field} ({timeout})",
                    field=interval_field,
                    value=interval,
                )
        return self

    @property
    def has_fleet_credentials(self) -> bool:
        return bool(self.fleet_api_key or (self.fleet_username and self.fleet_password))

    def display_dict(self) -> dict[str, Any]:
        """Settings as a dict with secrets masked."""
        data = self.model_dump()
        for key in ("fleet_password", "fleet_api_key"):
            if data.get(key):
                data[key] = "********"
        return data


def load_config(config_path: str | Path | None = None) -> HarnessConfig:
    """Load configuration from file and environment.

    Priority: env vars > config file > defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is not None:
        config_path = Path(config_path)
        if config_path.exists():
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigValidationError(
                    message=f"Config file {config_path} must contain a mapping",
                    value=type(loaded).__name__,
                )
            config_data = loaded

    config_data.update(_get_env_overrides())

    return HarnessConfig(**config_data)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from FLEETQA_* environment variables."""
    overrides: dict[str, Any] = {}

    converters = {
        "fleet_verify_ssl": _as_bool,
        "verbose": _as_bool,
        "monitoring_enabled": json.loads,
    }

    for name in HarnessConfig.model_fields:
        value = os.environ.get(f"FLEETQA_{name.upper()}")
        if value is None:
            continue
        converter = converters.get(name)
        overrides[name] = converter(value) if converter else value

    return overrides
