"""Domain models shared by the orchestration components.

Configuration blobs use camelCase keys; every pydantic model here accepts both
the camelCase alias and the snake_case field name.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ==============================================================================
# PIPELINE CONTEXT
# ==============================================================================


@dataclass(slots=True)
class PipelineContext:
    """Identity and variables of one workflow instance.

    ``tenant_id``, ``workflow_key`` and, once bound, ``ticket_id`` never change
    for the lifetime of the instance. ``stage_number`` and ``stage_name`` only
    move forward as stages advance.
    """

    tenant_id: str
    workflow_key: str
    ticket_id: str = ""
    stage_number: int = 0
    stage_name: str = ""
    process_instance_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def bind_ticket(self, ticket_id: str) -> None:
        """Attach the generated ticket id; rebinding to another id is an error."""
        ticket = str(ticket_id)
        if self.ticket_id and self.ticket_id != ticket:
            raise ValueError(
                f"Pipeline context already bound to ticket '{self.ticket_id}', refusing '{ticket}'"
            )
        self.ticket_id = ticket
        self.variables["TicketID"] = ticket

    def enter_stage(self, stage_number: int, stage_name: str) -> None:
        if stage_number < self.stage_number:
            raise ValueError(
                f"Stage number cannot move backwards ({self.stage_number} -> {stage_number})"
            )
        self.stage_number = stage_number
        self.stage_name = stage_name


# ==============================================================================
# RESULT ENVELOPE
# ==============================================================================


def _now_millis() -> int:
    return int(time.time() * 1000)


class ResultEnvelope(BaseModel):
    """Persisted wrapper around one agent call.

    The stored document carries the raw response under both ``rawResponse``
    and ``apiResponse`` so readers of either historical shape can consume it.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    agent_id: str
    status_code: int
    success: bool
    raw_response: Any = None
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_millis)

    @classmethod
    def build(
        cls,
        agent_id: str,
        status_code: int,
        raw_response: Any,
        extracted_data: dict[str, Any] | None = None,
        *,
        success_status: int = 200,
    ) -> ResultEnvelope:
        return cls(
            agent_id=agent_id,
            status_code=status_code,
            success=status_code == success_status,
            raw_response=raw_response,
            extracted_data=dict(extracted_data or {}),
        )

    @property
    def raw_text(self) -> str:
        """Raw response as a string, JSON-encoding structured values."""
        if isinstance(self.raw_response, str):
            return self.raw_response
        if self.raw_response is None:
            return ""
        return json.dumps(self.raw_response)

    def with_extracted(self, extracted: dict[str, Any]) -> ResultEnvelope:
        return self.model_copy(update={"extracted_data": {**self.extracted_data, **extracted}})

    def to_document(self) -> dict[str, Any]:
        """Serialisable form written to the object store."""
        return {
            "agentId": self.agent_id,
            "statusCode": self.status_code,
            "success": self.success,
            "rawResponse": self.raw_text,
            "apiResponse": self.raw_text,
            "extractedData": dict(self.extracted_data),
            "timestamp": self.timestamp,
        }

    def to_projection_source(self) -> dict[str, Any]:
        """Document used for path projections.

        ``rawResponse`` is parsed into an object when it holds valid JSON so
        paths such as ``$.rawResponse.answer`` resolve.
        """
        document = self.to_document()
        document["rawResponse"] = parse_json_if_possible(self.raw_response)
        document.pop("apiResponse", None)
        return document


def parse_json_if_possible(value: Any) -> Any:
    """Return the parsed JSON for strings that hold an object or array."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or text[0] not in "{[":
        return value
    try:
        return json.loads(text)
    except ValueError:
        return value


# ==============================================================================
# AGENT CONFIGURATION
# ==============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class AuthMethod(str, Enum):
    NONE = "none"
    BASIC = "basicAuth"
    API_KEY = "apiKey"

    @classmethod
    def _missing_(cls, value: object) -> AuthMethod | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class AgentEndpoint(_CamelModel):
    """Where and how an agent is called.

    ``base_url_key`` is a property prefix (``dia`` aliases ``agent.api``);
    the base URL is the ``<prefix>.url`` property.
    """

    base_url_key: str = Field(default="dia", alias="baseUrl")
    route: str = ""
    method: str = "POST"
    auth_type: AuthMethod = AuthMethod.NONE


class InputType(str, Enum):
    VALUE = "value"
    MINIO_FILE = "minioFile"
    MINIO_JSON = "minioJson"

    @classmethod
    def _missing_(cls, value: object) -> InputType | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class InputItem(_CamelModel):
    """One entry of the agent ``data`` object."""

    key: str
    type: InputType = InputType.VALUE
    value: Any = ""
    source_json_path: str = ""


class LegacyInputMapping(_CamelModel):
    """Single-source input description used by older agent definitions."""

    source: Literal["documentVariable", "processVariable", "chainedOutput"]
    transformation: str = "none"
    variable_name: str | None = None
    chain_from: str | None = None


class VariableProjection(_CamelModel):
    """``{path, dataType, defaultValue}`` mapping into one variable."""

    path: str = Field(default="$", validation_alias="jsonPath")
    data_type: str = "json"
    default_value: Any = None

    @field_validator("path", mode="before")
    @classmethod
    def _default_path(cls, value: Any) -> Any:
        return value if value not in (None, "") else "$"


class MergeSourceType(str, Enum):
    RESPONSE_JSON = "responseJson"
    PROCESS_VARIABLE = "processVariable"
    MINIO_FILE = "minioFile"

    @classmethod
    def _missing_(cls, value: object) -> MergeSourceType | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class MergePath(_CamelModel):
    key_name: str | None = None
    source_type: MergeSourceType = MergeSourceType.RESPONSE_JSON
    data_type: str = "json"
    path: str = "$"
    variable_name: str = ""
    source_path: str = ""


class StoreIn(str, Enum):
    PROCESS_VARIABLE = "processVariable"
    OBJECT_STORAGE = "objectStorage"

    @classmethod
    def _missing_(cls, value: object) -> StoreIn | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class OutputDescriptor(_CamelModel):
    """Unified output mapping entry.

    Pattern A: one path into a variable. Pattern B: one path into a new stored
    artifact. Patterns C and D: several merged sources into a variable or an
    artifact.
    """

    store_in: StoreIn = StoreIn.PROCESS_VARIABLE
    data_type: str = "json"
    path: str = "$"
    storage_type: str = "minio"
    target_path: str = ""
    target_var_name: str | None = None
    merge_variables: bool = False
    merge_paths: list[MergePath] = Field(default_factory=list)


class ErrorHandling(_CamelModel):
    on_failure: str = "throwError"
    continue_on_error: bool = False
    error_code: str = "agentFailure"


class AgentConfig(_CamelModel):
    """One agent entry of the workflow configuration blob.

    The blob nests the behavioural settings under ``config``; both the nested
    and the flattened form are accepted.
    """

    agent_id: str
    display_name: str = ""
    enabled: bool = True
    order: int = 999
    critical: bool = False
    endpoint: AgentEndpoint = Field(default_factory=AgentEndpoint)
    inputs: list[InputItem] = Field(default_factory=list)
    legacy_input: LegacyInputMapping | None = None
    variables_to_set: dict[str, VariableProjection] = Field(default_factory=dict)
    output_mapping: dict[str, OutputDescriptor] = Field(default_factory=dict)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)

    @classmethod
    def from_blob(cls, entry: dict[str, Any]) -> AgentConfig:
        """Parse an ``agents[]`` entry with its nested ``config`` section."""
        payload = {key: value for key, value in entry.items() if key != "config"}
        config = dict(entry.get("config") or {})
        input_mapping = config.pop("inputMapping", None)
        if isinstance(input_mapping, list):
            payload["inputs"] = input_mapping
        elif isinstance(input_mapping, dict):
            payload["legacyInput"] = input_mapping
        output_mapping = config.pop("outputMapping", None) or {}
        if isinstance(output_mapping, dict):
            variables_to_set = output_mapping.get("variablesToSet")
            if isinstance(variables_to_set, dict):
                payload["variablesToSet"] = variables_to_set
            payload["outputMapping"] = {
                key: value
                for key, value in output_mapping.items()
                if key != "variablesToSet" and isinstance(value, dict)
            }
        if "errorHandling" in config:
            payload["errorHandling"] = config.pop("errorHandling")
        endpoint = {
            key: config.pop(key)
            for key in ("baseUrl", "route", "method", "authType")
            if key in config
        }
        if endpoint:
            payload["endpoint"] = {**dict(payload.get("endpoint") or {}), **endpoint}
        return cls.model_validate(payload)

    @property
    def label(self) -> str:
        return self.display_name or self.agent_id


__all__ = [
    "AgentConfig",
    "AgentEndpoint",
    "AuthMethod",
    "ErrorHandling",
    "InputItem",
    "InputType",
    "LegacyInputMapping",
    "MergePath",
    "MergeSourceType",
    "OutputDescriptor",
    "PipelineContext",
    "ResultEnvelope",
    "StoreIn",
    "VariableProjection",
    "parse_json_if_possible",
]
