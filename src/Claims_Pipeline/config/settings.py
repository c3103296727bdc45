"""Configuration system for the claims pipeline."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments supported by the pipeline."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class LoggingSettings(BaseModel):
    """Log level, renderer and redaction for pipeline output."""

    level: str = Field(default="INFO", description="Log level for application output")
    renderer: Literal["json", "console"] = Field(
        default="json", description="Structlog renderer; console is meant for local runs"
    )
    max_value_length: int | None = Field(
        default=2048, ge=16, description="Longer string values (e.g. base64 documents) are clipped"
    )
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization", "api_key"],
        description="Keys masked at any depth in log events",
    )


class MetricsSettings(BaseModel):
    """Agent call counters and latency histograms."""

    enabled: bool = True


class ObjectStorageSettings(BaseModel):
    """Where documents and agent results are stored (memory or S3/MinIO)."""

    backend: Literal["memory", "s3"] = Field(
        default="memory", description="Object store implementation used by the pipeline"
    )
    bucket: str = Field(default="insurance-claims", description="Target bucket for artefacts")
    root_folder: str = Field(
        default="insurance-claims",
        description="Leading folder of the numbered storage layout",
    )
    endpoint_url: str | None = Field(
        default=None, description="Custom endpoint URL (MinIO or S3-compatible service)"
    )
    region: str | None = Field(default=None, description="AWS region (blank for MinIO/dev)")
    access_key_id: SecretStr | None = Field(default=None, description="S3 access key ID")
    secret_access_key: SecretStr | None = Field(default=None, description="S3 secret access key")
    use_tls: bool = Field(default=False, description="Whether to require TLS for the endpoint")


class AgentClientSettings(BaseModel):
    """Outbound agent call behaviour."""

    timeout: float = Field(default=120.0, gt=0, description="Per-request timeout in seconds")
    attempts: int = Field(default=1, ge=1, description="Attempts per agent call")
    backoff_initial: float = Field(default=0.5, ge=0.0)
    backoff_max: float = Field(default=10.0, ge=0.0)
    success_status: int = Field(default=200, description="Status code treated as success")
    failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before the breaker opens"
    )
    recovery_timeout: float = Field(default=60.0, gt=0)
    rate_per_second: float | None = Field(
        default=None, gt=0, description="Optional client side rate limit"
    )


class StageSettings(BaseModel):
    """Stage numbering behaviour for task names missing from the static table."""

    fallback: Literal["counter", "sentinel"] = "counter"
    sentinel: int = Field(default=99, ge=1)


class ResultStoreSettings(BaseModel):
    """Key scheme used when persisting agent result envelopes."""

    key_scheme: Literal["simple", "numbered"] = "simple"


class ConfigStoreSettings(BaseModel):
    """Location of per-workflow configuration blobs."""

    path: Path | None = Field(default=None, description="Directory holding workflow blobs")
    properties_path: Path | None = Field(
        default=None, description="Directory holding per-tenant property files"
    )


class AppSettings(BaseSettings):
    """Settings for one pipeline process, read from ``CP_`` variables."""

    environment: Environment = Environment.DEV
    debug: bool = False
    service_name: str = "claims-pipeline"
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    object_storage: ObjectStorageSettings = Field(default_factory=ObjectStorageSettings)
    agent_client: AgentClientSettings = Field(default_factory=AgentClientSettings)
    stages: StageSettings = Field(default_factory=StageSettings)
    results: ResultStoreSettings = Field(default_factory=ResultStoreSettings)
    config_store: ConfigStoreSettings = Field(default_factory=ConfigStoreSettings)
    document_concurrency: int = Field(
        default=4, ge=1, description="Documents processed concurrently within one stage"
    )

    model_config = SettingsConfigDict(env_prefix="CP_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "debug": True,
        "logging": {"level": "DEBUG"},
    },
    Environment.STAGING: {
        "object_storage": {"backend": "s3", "use_tls": True},
        "agent_client": {"attempts": 2},
    },
    Environment.PROD: {
        "object_storage": {"backend": "s3", "use_tls": True},
        "agent_client": {"attempts": 2},
        "logging": {"level": "INFO"},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied.

    Environment defaults only fill values that were not provided through
    ``CP_`` variables.
    """
    env_value = (environment or os.getenv("CP_ENV", "dev")).lower()
    env = Environment(env_value)
    defaults = ENVIRONMENT_DEFAULTS.get(env, {})
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    explicit = base_settings.model_dump(exclude_unset=True)
    merged = _deep_update(_deep_update(AppSettings.model_construct().model_dump(), defaults), explicit)
    merged["environment"] = env
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Process-wide settings, loaded once."""
    return load_settings()


__all__ = [
    "AgentClientSettings",
    "AppSettings",
    "ConfigStoreSettings",
    "Environment",
    "LoggingSettings",
    "MetricsSettings",
    "ObjectStorageSettings",
    "ResultStoreSettings",
    "StageSettings",
    "get_settings",
    "load_settings",
]
