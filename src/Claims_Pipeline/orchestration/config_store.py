"""Workflow configuration blobs and their cache.

One JSON/YAML blob exists per ``(workflowKey, tenantId)``. Recognised top level
sections are ``externalAPIs``, ``agents``, ``scoring`` and
``genericWorkflowDelegateConfigurations``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

from Claims_Pipeline.orchestration.models import AgentConfig
from Claims_Pipeline.utils.errors import ConfigurationMissing

logger = structlog.get_logger(__name__)

AGENTS_SECTION = "agents"
SCORING_SECTION = "scoring"
EXTERNAL_APIS_SECTION = "externalAPIs"
DELEGATE_SECTION = "genericWorkflowDelegateConfigurations"


def cache_key(workflow_key: str, tenant_id: str) -> str:
    return f"{workflow_key}_{tenant_id}"


class ConfigurationStore(Protocol):
    def load(self, workflow_key: str, tenant_id: str) -> dict[str, Any]:
        """Return the raw configuration blob, or an empty dict when none exists."""


class InMemoryConfigurationStore:
    """Blobs keyed by ``workflowKey_tenantId``."""

    def __init__(self, blobs: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._blobs = {key: dict(value) for key, value in (blobs or {}).items()}

    def put(self, workflow_key: str, tenant_id: str, blob: Mapping[str, Any]) -> None:
        self._blobs[cache_key(workflow_key, tenant_id)] = dict(blob)

    def load(self, workflow_key: str, tenant_id: str) -> dict[str, Any]:
        return dict(self._blobs.get(cache_key(workflow_key, tenant_id), {}))


class FileConfigurationStore:
    """Reads ``{workflowKey}_{tenantId}.yaml|.yml|.json`` from a directory."""

    SUFFIXES = (".yaml", ".yml", ".json")

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def load(self, workflow_key: str, tenant_id: str) -> dict[str, Any]:
        stem = cache_key(workflow_key, tenant_id)
        for suffix in self.SUFFIXES:
            path = self._directory / f"{stem}{suffix}"
            if not path.exists():
                continue
            text = path.read_text(encoding="utf-8")
            data = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise ConfigurationMissing(
                    f"Workflow configuration '{path.name}' must contain a mapping"
                )
            logger.info("config_store.loaded", path=str(path))
            return data
        logger.warning("config_store.not_found", workflow_key=workflow_key, tenant_id=tenant_id)
        return {}


class WorkflowConfiguration:
    """Typed access to the sections of one configuration blob."""

    def __init__(self, blob: Mapping[str, Any], *, workflow_key: str = "", tenant_id: str = "") -> None:
        self._blob = dict(blob)
        self.workflow_key = workflow_key
        self.tenant_id = tenant_id
        self._agents: list[AgentConfig] | None = None

    @property
    def raw(self) -> dict[str, Any]:
        return self._blob

    def _section(self, name: str) -> Any:
        if name not in self._blob:
            raise ConfigurationMissing(
                f"Section '{name}' missing from configuration of "
                f"workflow '{self.workflow_key}' tenant '{self.tenant_id}'",
                extra={"section": name},
            )
        return self._blob[name]

    def agent_entries(self) -> list[dict[str, Any]]:
        entries = self._section(AGENTS_SECTION)
        if not isinstance(entries, list):
            raise ConfigurationMissing(f"Section '{AGENTS_SECTION}' must be a list")
        return [dict(entry) for entry in entries]

    def agents(self) -> list[AgentConfig]:
        """Enabled agents ordered by ``order`` (unset orders sort last)."""
        if self._agents is None:
            parsed = [AgentConfig.from_blob(entry) for entry in self.agent_entries()]
            self._agents = sorted(
                (agent for agent in parsed if agent.enabled), key=lambda agent: agent.order
            )
        return list(self._agents)

    def agent(self, agent_id: str) -> AgentConfig:
        for entry in self.agent_entries():
            if entry.get("agentId") == agent_id:
                return AgentConfig.from_blob(entry)
        raise ConfigurationMissing(f"Agent '{agent_id}' not configured", extra={"agent_id": agent_id})

    def scoring(self, scoring_type: str) -> dict[str, Any]:
        section = self._section(SCORING_SECTION)
        if not isinstance(section, Mapping) or scoring_type not in section:
            raise ConfigurationMissing(f"Scoring configuration '{scoring_type}' not found")
        return dict(section[scoring_type])

    def delegate_configuration(self, config_key: str) -> dict[str, Any]:
        section = self._section(DELEGATE_SECTION)
        if not isinstance(section, Mapping) or config_key not in section:
            raise ConfigurationMissing(f"Configuration not found for key: {config_key}")
        return dict(section[config_key])

    def external_api(self, name: str) -> dict[str, Any]:
        section = self._section(EXTERNAL_APIS_SECTION)
        if not isinstance(section, Mapping) or name not in section:
            raise ConfigurationMissing(f"Section '{name}' missing from '{EXTERNAL_APIS_SECTION}'")
        return dict(section[name])

    def optional_external_api(self, name: str) -> dict[str, Any]:
        section = self._blob.get(EXTERNAL_APIS_SECTION) or {}
        return dict(section.get(name) or {}) if isinstance(section, Mapping) else {}


class ConfigurationCache:
    """Caches parsed configurations per ``workflowKey_tenantId``.

    Entries live until :meth:`invalidate` or :meth:`clear`; empty blobs are
    not cached so a later deployment of the configuration is picked up.
    """

    def __init__(self, store: ConfigurationStore) -> None:
        self._store = store
        self._entries: dict[str, WorkflowConfiguration] = {}

    def get(self, workflow_key: str, tenant_id: str) -> WorkflowConfiguration:
        key = cache_key(workflow_key, tenant_id)
        cached = self._entries.get(key)
        if cached is not None:
            logger.debug("config_store.cache.hit", key=key)
            return cached
        blob = self._store.load(workflow_key, tenant_id)
        configuration = WorkflowConfiguration(blob, workflow_key=workflow_key, tenant_id=tenant_id)
        if blob:
            self._entries[key] = configuration
        return configuration

    def invalidate(self, workflow_key: str, tenant_id: str) -> None:
        self._entries.pop(cache_key(workflow_key, tenant_id), None)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("config_store.cache.cleared")

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "ConfigurationCache",
    "ConfigurationStore",
    "FileConfigurationStore",
    "InMemoryConfigurationStore",
    "WorkflowConfiguration",
    "cache_key",
]
