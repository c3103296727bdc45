"""Problem detail helpers and the pipeline error taxonomy.

Key Responsibilities:
    - Provide an RFC 7807 style data structure describing a failure
    - Supply a base exception carrying both a problem detail and the short
      machine readable code consumed by the workflow engine for routing
    - Define the failure kinds raised by the orchestration components

Collaborators:
    - Upstream: Orchestration components raise these exceptions
    - Downstream: The workflow engine reads ``code`` to pick compensation paths

Side Effects:
    - None; helpers are pure data containers

Thread Safety:
    - Thread-safe; instances are not shared between calls
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================

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
    "stage_error_code",
]


@dataclass(slots=True)
class ProblemDetail:
    """Lightweight problem details object compliant with RFC 7807."""

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        """Return a dictionary representation with optional fields dropped."""
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not payload.get("extra"):
            payload.pop("extra", None)
        return payload


class PipelineError(RuntimeError):
    """Base exception that carries a :class:`ProblemDetail` and an error code."""

    default_code = "PIPELINE_ERROR"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        detail: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception with structured problem detail attributes.

        Args:
            message: Human readable error summary.
            code: Machine readable code; defaults to the class level code.
            status: HTTP-like status associated with the problem.
            detail: Optional detailed description of the failure.
            extra: Additional attributes included in the serialized payload.
        """
        super().__init__(message)
        self.code = code or self.default_code
        self.problem = ProblemDetail(
            title=message,
            status=status if status is not None else self.default_status,
            detail=detail,
            type=f"urn:claims-pipeline:{self.code}",
            extra={"code": self.code, **dict(extra or {})},
        )

    @property
    def message(self) -> str:
        return self.problem.title


class ConfigurationMissing(PipelineError):
    """A required configuration section or property is absent."""

    default_code = "CONFIG_ERROR"


class AgentCallFailed(PipelineError):
    """Non-success status or transport failure while calling an agent.

    ``status_code`` is ``None`` when the request never produced a response.
    """

    default_code = "AGENT_ERROR"
    default_status = 502

    def __init__(
        self,
        message: str,
        *,
        agent_id: str | None = None,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(
            message,
            detail=body or None,
            extra={"agent_id": agent_id, "status_code": status_code},
        )
        self.agent_id = agent_id
        self.status_code = status_code
        self.body = body


class ProjectionSkipped(PipelineError):
    """A single response path could not be resolved."""

    default_code = "PROJECTION_SKIPPED"
    default_status = 422


class MergeSkipped(PipelineError):
    """One document could not contribute to a consolidation run."""

    default_code = "MERGE_SKIPPED"
    default_status = 422

    def __init__(self, message: str, *, filename: str | None = None) -> None:
        super().__init__(message, extra={"filename": filename})
        self.filename = filename


class ConsolidationFailed(PipelineError):
    """No document contributed any data to a consolidation run."""

    default_code = "CONSOLIDATION_ERROR"


class InputResolutionError(PipelineError):
    """An agent input referencing stored content could not be loaded."""

    default_code = "FILE_ERROR"


class OutputMappingError(PipelineError):
    """An output mapping failed for a reason other than a missing path."""

    default_code = "OUTPUT_MAPPING_ERROR"


class WorkflowError(PipelineError):
    """Fatal, user visible signal raised to the workflow engine."""

    default_code = "WORKFLOW_ERROR"

    @classmethod
    def from_stage(
        cls, stage_name: str, message: str, *, cause: BaseException | None = None
    ) -> WorkflowError:
        error = cls(message, code=stage_error_code(stage_name))
        if cause is not None:
            error.__cause__ = cause
        return error


# ==============================================================================
# HELPERS
# ==============================================================================

_STAGE_ERROR_CODES: dict[str, str] = {
    "FHIRAnalyser": "fhirAnalyserFailed",
    "FHIRConsolidator": "fhirConsolidatorFailed",
    "PolicyCoherence": "policyCoherenceFailed",
    "MedicalCoherence": "medicalCoherenceFailed",
    "SubmissionValidator": "submissionValidatorFailed",
    "UIDisplayer": "uiDisplayerFailed",
    "OcrToStatic": "ocrToStaticFailed",
}


def stage_error_code(stage_name: str) -> str:
    """Return the workflow error code for ``stage_name``.

    Known stages map to their historical codes; any other name becomes
    ``lowerCamel(name) + "Failed"``.
    """
    compact = re.sub(r"[^A-Za-z0-9]", "", stage_name or "")
    for known, code in _STAGE_ERROR_CODES.items():
        if known.lower() == compact.lower():
            return code
    if not compact:
        return "stageFailed"
    return compact[0].lower() + compact[1:] + "Failed"
