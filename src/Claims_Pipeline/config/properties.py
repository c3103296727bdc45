"""Tenant scoped static properties.

Properties are flat dotted keys (``agent.api.url``) mapped to strings. They are
loaded from YAML documents whose nested mappings are flattened, so both
``{"agent.api.url": ...}`` and ``{"agent": {"api": {"url": ...}}}`` produce the
same key.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from Claims_Pipeline.utils.errors import ConfigurationMissing

logger = structlog.get_logger(__name__)


def _flatten(prefix: str, value: Any, target: dict[str, str]) -> None:
    if isinstance(value, Mapping):
        for key, nested in value.items():
            child = f"{prefix}.{key}" if prefix else str(key)
            _flatten(child, nested, target)
        return
    if value is None:
        return
    if isinstance(value, bool):
        target[prefix] = "true" if value else "false"
    else:
        target[prefix] = str(value)


class TenantProperties(Mapping[str, str]):
    """Read-only property source for a single tenant."""

    def __init__(self, values: Mapping[str, Any] | None = None, *, tenant_id: str = "") -> None:
        flattened: dict[str, str] = {}
        _flatten("", values or {}, flattened)
        self._values = flattened
        self.tenant_id = tenant_id

    @classmethod
    def from_yaml(cls, path: str | Path, *, tenant_id: str = "") -> TenantProperties:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ConfigurationMissing(f"Property file '{path}' must contain a mapping")
        return cls(data, tenant_id=tenant_id)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def require(self, key: str) -> str:
        """Return ``key`` or raise :class:`ConfigurationMissing`."""
        value = self._values.get(key)
        if value is None:
            raise ConfigurationMissing(
                f"Property not found: {key}", extra={"tenant_id": self.tenant_id}
            )
        return value


class PropertyRegistry:
    """Loads and caches :class:`TenantProperties` per tenant.

    Files are looked up as ``{directory}/{tenant_id}.yaml`` (or ``.yml``).
    Explicitly registered tenants take precedence over files.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory
        self._cache: dict[str, TenantProperties] = {}

    def register(self, tenant_id: str, values: Mapping[str, Any]) -> TenantProperties:
        properties = TenantProperties(values, tenant_id=tenant_id)
        self._cache[tenant_id] = properties
        return properties

    def get(self, tenant_id: str) -> TenantProperties:
        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached
        if self._directory is None:
            raise ConfigurationMissing(f"No properties registered for tenant '{tenant_id}'")
        for suffix in (".yaml", ".yml"):
            candidate = self._directory / f"{tenant_id}{suffix}"
            if candidate.is_file():
                properties = TenantProperties.from_yaml(candidate, tenant_id=tenant_id)
                self._cache[tenant_id] = properties
                logger.info(
                    "properties.loaded", tenant_id=tenant_id, path=str(candidate), keys=len(properties)
                )
                return properties
        raise ConfigurationMissing(f"No property file found for tenant '{tenant_id}'")

    def clear(self) -> None:
        self._cache.clear()


__all__ = ["PropertyRegistry", "TenantProperties"]
