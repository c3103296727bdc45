"""Lightweight configuration package exports."""

from __future__ import annotations

from .properties import PropertyRegistry, TenantProperties
from .settings import (
    AgentClientSettings,
    AppSettings,
    ConfigStoreSettings,
    Environment,
    LoggingSettings,
    MetricsSettings,
    ObjectStorageSettings,
    ResultStoreSettings,
    StageSettings,
    get_settings,
    load_settings,
)

__all__ = [
    "AgentClientSettings",
    "AppSettings",
    "ConfigStoreSettings",
    "Environment",
    "LoggingSettings",
    "MetricsSettings",
    "ObjectStorageSettings",
    "PropertyRegistry",
    "ResultStoreSettings",
    "StageSettings",
    "TenantProperties",
    "get_settings",
    "load_settings",
]
