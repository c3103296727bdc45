"""Ticket creation: the first stage of every claim workflow.

The ``genericWorkflowDelegateConfigurations.<configKey>`` section describes a
root object assembled from the execution context and pipeline variables,
followed by a list of typed steps that run against it:

``SqlQueryExecution``
    Run a parameterised statement; a ``select`` can publish one column of the
    first row (typically the generated ticket id).
``UploadToS3``
    Decode the submitted base64 documents and upload them under a path built
    from the root object, then publish ``documentPaths``, ``attachmentVars``
    and an empty ``fileProcessMap``.
``SetProcessVariables``
    Copy static values or root object fields into pipeline variables.

Step configurations are validated once, when the section is loaded.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import re
import sqlite3
import threading
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Annotated, Any, Literal, Protocol, Union

import structlog
from pydantic import Field, ValidationError, field_validator

from Claims_Pipeline.orchestration.config_store import ConfigurationCache
from Claims_Pipeline.orchestration.consolidation import DocumentStateStore
from Claims_Pipeline.orchestration.jsonpath import resolve_path
from Claims_Pipeline.orchestration.models import PipelineContext, _CamelModel
from Claims_Pipeline.orchestration.placeholders import stringify
from Claims_Pipeline.storage.base import ObjectStore, StorageError
from Claims_Pipeline.utils.errors import ConfigurationMissing

logger = structlog.get_logger(__name__)

BINARY_CONTENT_TYPE = "application/octet-stream"
DEFAULT_FILE_OBJECT = "docsObj"
_PATH_TOKEN = re.compile(r"\{([^{}]+)\}")


# ==============================================================================
# STEP CONFIGURATION
# ==============================================================================


class StepType(str, Enum):
    SQL_QUERY_EXECUTION = "SqlQueryExecution"
    UPLOAD_TO_S3 = "UploadToS3"
    SET_PROCESS_VARIABLES = "SetProcessVariables"

    @classmethod
    def _missing_(cls, value: object) -> StepType | None:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


class InitialVariable(_CamelModel):
    key: str
    execution_method: bool = False
    process_variable: bool = False
    source: str | None = None
    static_value: Any = None


class SqlParameter(_CamelModel):
    key: str


class VariableKey(_CamelModel):
    key: str


class SqlQueryConfig(_CamelModel):
    query: str
    parameters: list[SqlParameter] = Field(default_factory=list)
    query_type: str = "update"

    @property
    def is_select(self) -> bool:
        return self.query_type.lower() == "select"


class SqlQueryStep(_CamelModel):
    type: Literal["SqlQueryExecution"]
    config: SqlQueryConfig
    return_value_key: str = ""
    return_value_obj_key: str = ""
    process_variables_to_set_after_execution: list[VariableKey] = Field(default_factory=list)


class UploadStep(_CamelModel):
    type: Literal["UploadToS3"]
    storage_type: str
    path_pattern: str
    file_obj: str = DEFAULT_FILE_OBJECT

    @field_validator("storage_type")
    @classmethod
    def _minio_only(cls, value: str) -> str:
        if value.lower() != "minio":
            raise ValueError(f"Unsupported storageType '{value}'; only 'minio' is supported")
        return value

    @field_validator("path_pattern")
    @classmethod
    def _required_pattern(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("pathPattern is required for UploadToS3 steps")
        return value

    @field_validator("file_obj", mode="before")
    @classmethod
    def _default_file_obj(cls, value: Any) -> Any:
        return value or DEFAULT_FILE_OBJECT


class VariableAssignment(_CamelModel):
    key: str
    static_value: Any = None
    source_path: str | None = None

    @property
    def has_static_value(self) -> bool:
        return "static_value" in self.model_fields_set


class SetVariablesStep(_CamelModel):
    type: Literal["SetProcessVariables"]
    variables: list[VariableAssignment] = Field(default_factory=list)


DelegateStep = Annotated[
    Union[SqlQueryStep, UploadStep, SetVariablesStep],
    Field(discriminator="type"),
]


class TicketGeneratorConfig(_CamelModel):
    initial_variables_root_obj: list[InitialVariable] = Field(default_factory=list)
    steps: list[DelegateStep] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _canonical_step_types(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        steps = []
        for entry in value:
            if isinstance(entry, Mapping) and isinstance(entry.get("type"), str):
                try:
                    entry = {**entry, "type": StepType(entry["type"]).value}
                except ValueError as exc:
                    raise ValueError(f"Unknown step type '{entry['type']}'") from exc
            steps.append(entry)
        return steps

    @classmethod
    def load(cls, section: Mapping[str, Any], *, config_key: str) -> TicketGeneratorConfig:
        try:
            return cls.model_validate(dict(section))
        except ValidationError as exc:
            raise ConfigurationMissing(
                f"Invalid ticket generator configuration '{config_key}'",
                detail=str(exc),
            ) from exc


# ==============================================================================
# RELATIONAL STORE
# ==============================================================================


class RelationalStore(Protocol):
    async def fetch_one(self, query: str, params: Sequence[Any]) -> Mapping[str, Any] | None:
        ...

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        ...


class SqliteRelationalStore:
    """:class:`RelationalStore` over a single sqlite3 connection."""

    def __init__(self, database: str = ":memory:") -> None:
        self._connection = sqlite3.connect(database, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def _run(self, func: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            return func(self._connection)

    async def fetch_one(self, query: str, params: Sequence[Any]) -> Mapping[str, Any] | None:
        def _fetch(connection: sqlite3.Connection) -> Mapping[str, Any] | None:
            row = connection.execute(query, tuple(params)).fetchone()
            connection.commit()
            return dict(row) if row is not None else None

        return await asyncio.to_thread(self._run, _fetch)

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        def _execute(connection: sqlite3.Connection) -> int:
            cursor = connection.execute(query, tuple(params))
            connection.commit()
            return cursor.rowcount

        return await asyncio.to_thread(self._run, _execute)

    async def executescript(self, script: str) -> None:
        await asyncio.to_thread(self._run, lambda connection: connection.executescript(script))

    def close(self) -> None:
        self._connection.close()


# ==============================================================================
# GENERATOR
# ==============================================================================


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return stringify(value)


class TicketIdGenerator:
    """Runs the ticket creation steps for one workflow instance."""

    def __init__(
        self,
        configurations: ConfigurationCache,
        object_store: ObjectStore,
        relational: RelationalStore,
        *,
        documents: DocumentStateStore | None = None,
    ) -> None:
        self._configurations = configurations
        self._store = object_store
        self._relational = relational
        self._documents = documents
        self._handlers = {
            StepType.SQL_QUERY_EXECUTION: self._run_sql,
            StepType.UPLOAD_TO_S3: self._run_upload,
            StepType.SET_PROCESS_VARIABLES: self._run_set_variables,
        }

    async def run(self, context: PipelineContext, config_key: str) -> dict[str, Any]:
        """Execute the configured steps and return the final root object."""
        if not config_key or not config_key.strip():
            raise ConfigurationMissing("Ticket generator 'configKey' is missing")
        configuration = self._configurations.get(context.workflow_key, context.tenant_id)
        logger.info(
            "id_generator.started",
            config_key=config_key,
            workflow_key=context.workflow_key,
            tenant_id=context.tenant_id,
        )
        if "agents" in configuration.raw:
            context.set_variable("agentList", configuration.agent_entries())

        generator = TicketGeneratorConfig.load(
            configuration.delegate_configuration(config_key), config_key=config_key
        )
        root = self._initial_root(context, generator.initial_variables_root_obj)
        for step in generator.steps:
            step_type = StepType(step.type)
            logger.debug("id_generator.step", step_type=step_type.value)
            await self._handlers[step_type](context, step, root)

        ticket = context.get_variable("TicketID")
        if ticket is not None and not context.ticket_id:
            context.bind_ticket(str(ticket))
        if context.ticket_id and self._documents is not None:
            await self._documents.initialize(
                context.ticket_id, (context.get_variable("documentPaths") or {}).keys()
            )
        logger.info("id_generator.completed", ticket_id=context.ticket_id or None)
        return root

    @staticmethod
    def _initial_root(
        context: PipelineContext, entries: Sequence[InitialVariable]
    ) -> dict[str, Any]:
        execution_values = {
            "tenantId": context.tenant_id,
            "workflowKey": context.workflow_key,
            "processInstanceId": context.process_instance_id,
            "stageName": context.stage_name,
        }
        root: dict[str, Any] = {}
        for entry in entries:
            if entry.execution_method:
                if entry.key in execution_values:
                    root[entry.key] = execution_values[entry.key]
                else:
                    logger.warning("id_generator.execution_variable.unknown", key=entry.key)
            elif entry.process_variable:
                root[entry.key] = context.get_variable(entry.source or entry.key)
            elif "static_value" in entry.model_fields_set:
                root[entry.key] = _as_text(entry.static_value)
        return root

    async def _run_sql(self, context: PipelineContext, step: SqlQueryStep, root: dict[str, Any]) -> None:
        params = [_as_text(root.get(parameter.key)) for parameter in step.config.parameters]
        if not step.config.is_select:
            count = await self._relational.execute(step.config.query, params)
            logger.info("id_generator.sql.executed", rows=count)
            return
        row = await self._relational.fetch_one(step.config.query, params)
        if row is None:
            logger.warning("id_generator.sql.no_rows")
            return
        result = row.get(step.return_value_key)
        if step.return_value_obj_key:
            root[step.return_value_obj_key] = result
        for variable in step.process_variables_to_set_after_execution:
            context.set_variable(variable.key, result)
        logger.info("id_generator.sql.selected", column=step.return_value_key)

    async def _run_upload(self, context: PipelineContext, step: UploadStep, root: dict[str, Any]) -> None:
        documents = root.get(step.file_obj)
        if documents is None:
            logger.warning("id_generator.upload.no_documents", file_obj=step.file_obj)
            return
        base_path = _PATH_TOKEN.sub(
            lambda match: (
                _as_text(root.get(match.group(1))) or ""
                if match.group(1) in root
                else match.group(0)
            ),
            step.path_pattern,
        )
        logger.info("id_generator.upload.started", path=base_path)

        pending: list[tuple[Any, Any]] = []
        if isinstance(documents, list):
            pending = [
                (item.get("filename"), item.get("content"))
                for item in documents
                if isinstance(item, Mapping)
            ]
        elif isinstance(documents, Mapping):
            if "filename" in documents and "content" in documents:
                pending = [(documents.get("filename"), documents.get("content"))]
            else:
                pending = list(documents.items())

        document_paths: dict[str, str] = {}
        for name, content in pending:
            if name is None or content is None:
                continue
            full_path = f"{base_path}{name}"
            try:
                payload = base64.b64decode(str(content), validate=False)
                await self._store.put(full_path, payload, content_type=BINARY_CONTENT_TYPE)
            except (binascii.Error, ValueError, StorageError) as exc:
                logger.error("id_generator.upload.failed", filename=name, error=str(exc))
                continue
            document_paths[str(name)] = full_path

        context.set_variable("documentPaths", document_paths)
        context.set_variable("attachmentVars", list(document_paths))
        context.set_variable("fileProcessMap", {name: {} for name in document_paths})
        logger.info("id_generator.upload.completed", documents=len(document_paths))

    @staticmethod
    async def _run_set_variables(
        context: PipelineContext, step: SetVariablesStep, root: dict[str, Any]
    ) -> None:
        for assignment in step.variables:
            if assignment.has_static_value:
                value = assignment.static_value
            elif assignment.source_path:
                value = resolve_path(root, assignment.source_path, default=None)
                if value is not None and not isinstance(value, (dict, list)):
                    value = stringify(value)
            else:
                continue
            context.set_variable(assignment.key, value)


__all__ = [
    "DelegateStep",
    "InitialVariable",
    "RelationalStore",
    "SetVariablesStep",
    "SqlQueryStep",
    "SqliteRelationalStore",
    "StepType",
    "TicketGeneratorConfig",
    "TicketIdGenerator",
    "UploadStep",
]
