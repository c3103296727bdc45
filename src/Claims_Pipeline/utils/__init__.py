"""Utility modules shared by the pipeline layers."""

from .errors import (
    AgentCallFailed,
    ConfigurationMissing,
    ConsolidationFailed,
    InputResolutionError,
    MergeSkipped,
    OutputMappingError,
    PipelineError,
    ProblemDetail,
    ProjectionSkipped,
    WorkflowError,
)


__all__ = [
    "AgentCallFailed",
    "ConfigurationMissing",
    "ConsolidationFailed",
    "InputResolutionError",
    "MergeSkipped",
    "OutputMappingError",
    "PipelineError",
    "ProblemDetail",
    "ProjectionSkipped",
    "WorkflowError",
]
