"""Stage orchestration primitives for claim workflows."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_ATTRIBUTE_MAP: dict[str, tuple[str, str]] = {
    "AgentConfig": ("Claims_Pipeline.orchestration.models", "AgentConfig"),
    "PipelineContext": ("Claims_Pipeline.orchestration.models", "PipelineContext"),
    "ResultEnvelope": ("Claims_Pipeline.orchestration.models", "ResultEnvelope"),
    "PlaceholderResolver": ("Claims_Pipeline.orchestration.placeholders", "PlaceholderResolver"),
    "PathExpression": ("Claims_Pipeline.orchestration.jsonpath", "PathExpression"),
    "resolve_path": ("Claims_Pipeline.orchestration.jsonpath", "resolve_path"),
    "convert_value": ("Claims_Pipeline.orchestration.coercion", "convert_value"),
    "RequestTemplate": ("Claims_Pipeline.orchestration.request_builder", "RequestTemplate"),
    "InputDataBuilder": ("Claims_Pipeline.orchestration.request_builder", "InputDataBuilder"),
    "AgentEndpointResolver": ("Claims_Pipeline.orchestration.invoker", "AgentEndpointResolver"),
    "AgentInvoker": ("Claims_Pipeline.orchestration.invoker", "AgentInvoker"),
    "ProjectionReport": ("Claims_Pipeline.orchestration.projector", "ProjectionReport"),
    "ResponseProjector": ("Claims_Pipeline.orchestration.projector", "ResponseProjector"),
    "StageTracker": ("Claims_Pipeline.orchestration.stages", "StageTracker"),
    "UnmappedStrategy": ("Claims_Pipeline.orchestration.stages", "UnmappedStrategy"),
    "WorkflowStageMapping": ("Claims_Pipeline.orchestration.stages", "WorkflowStageMapping"),
    "ConsolidationMerger": ("Claims_Pipeline.orchestration.consolidation", "ConsolidationMerger"),
    "DocumentStateStore": ("Claims_Pipeline.orchestration.consolidation", "DocumentStateStore"),
    "MergeResult": ("Claims_Pipeline.orchestration.consolidation", "MergeResult"),
    "ConfigurationCache": ("Claims_Pipeline.orchestration.config_store", "ConfigurationCache"),
    "FileConfigurationStore": ("Claims_Pipeline.orchestration.config_store", "FileConfigurationStore"),
    "InMemoryConfigurationStore": (
        "Claims_Pipeline.orchestration.config_store",
        "InMemoryConfigurationStore",
    ),
    "WorkflowConfiguration": ("Claims_Pipeline.orchestration.config_store", "WorkflowConfiguration"),
    "SqliteRelationalStore": ("Claims_Pipeline.orchestration.id_generator", "SqliteRelationalStore"),
    "TicketIdGenerator": ("Claims_Pipeline.orchestration.id_generator", "TicketIdGenerator"),
    "ScoringStage": ("Claims_Pipeline.orchestration.scoring", "ScoringStage"),
    "PipelineOrchestrator": ("Claims_Pipeline.orchestration.orchestrator", "PipelineOrchestrator"),
}

__all__ = sorted(_ATTRIBUTE_MAP)


def __getattr__(name: str) -> Any:
    try:
        module_name, attr_name = _ATTRIBUTE_MAP[name]
    except KeyError as exc:  # pragma: no cover - standard attribute error path
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'") from exc

    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:  # pragma: no cover - convenience helper
    return sorted(globals().keys() | _ATTRIBUTE_MAP.keys())
