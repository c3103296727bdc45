"""Construction of outbound agent and scoring request bodies.

Two builders live here:

* :class:`RequestTemplate` assembles a request from static fields, generated
  fields (request ids, timestamps) and pipeline variables copied into nested
  paths.
* :class:`InputDataBuilder` assembles the ``data`` object of an agent call from
  the configured inputs, loading stored documents and earlier results where
  an input refers to them.
"""

from __future__ import annotations

import asyncio
import base64
import json
import random
import string
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from Claims_Pipeline.orchestration.coercion import convert_value
from Claims_Pipeline.orchestration.jsonpath import resolve_path, set_dotted
from Claims_Pipeline.orchestration.models import (
    AgentConfig,
    InputItem,
    InputType,
    LegacyInputMapping,
    PipelineContext,
)
from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver
from Claims_Pipeline.storage.base import StorageError
from Claims_Pipeline.storage.results import ResultStore
from Claims_Pipeline.utils.errors import InputResolutionError, ProjectionSkipped

logger = structlog.get_logger(__name__)

UUID_TOKEN = "{{UUID}}"
TIMESTAMP_TOKEN = "{{TIMESTAMP}}"
RANDOM_ID_TOKEN = "{{RANDOM_ID}}"


# ==============================================================================
# REQUEST TEMPLATES
# ==============================================================================


def _iso_instant() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _random_id() -> str:
    return random.choice(string.ascii_uppercase) + str(int(time.time() * 1000))


def generate_dynamic_value(token: Any) -> Any:
    """Expand a generated-field token; unknown values pass through unchanged."""
    if token == UUID_TOKEN:
        return str(uuid.uuid4())
    if token == TIMESTAMP_TOKEN:
        return _iso_instant()
    if token == RANDOM_ID_TOKEN:
        return _random_id()
    return token


@dataclass(slots=True)
class VariableMapping:
    api_field: str
    process_variable: str
    data_type: str = "string"

    @classmethod
    def from_blob(cls, entry: Mapping[str, Any]) -> VariableMapping:
        return cls(
            api_field=str(entry["apiField"]),
            process_variable=str(entry["processVariable"]),
            data_type=str(entry.get("dataType") or "string"),
        )


@dataclass(slots=True)
class RequestTemplate:
    """Request body recipe of a scoring or delegate call.

    ``static_fields`` and ``dynamic_fields`` map dotted request paths to values;
    dynamic values may be one of the generated tokens ``{{UUID}}``,
    ``{{TIMESTAMP}}`` or ``{{RANDOM_ID}}``.
    """

    static_fields: dict[str, Any] = field(default_factory=dict)
    dynamic_fields: dict[str, Any] = field(default_factory=dict)
    variable_mappings: list[VariableMapping] = field(default_factory=list)

    @classmethod
    def from_blob(cls, blob: Mapping[str, Any] | None) -> RequestTemplate:
        blob = blob or {}
        return cls(
            static_fields=dict(blob.get("staticFields") or {}),
            dynamic_fields=dict(blob.get("dynamicFields") or {}),
            variable_mappings=[
                VariableMapping.from_blob(entry) for entry in blob.get("variableMappings") or []
            ],
        )

    def build(self, variables: Mapping[str, Any]) -> dict[str, Any]:
        request: dict[str, Any] = {}
        for path, value in self.static_fields.items():
            set_dotted(request, path, value)
        for path, token in self.dynamic_fields.items():
            set_dotted(request, path, generate_dynamic_value(token))
        for mapping in self.variable_mappings:
            value = variables.get(mapping.process_variable)
            if value is None:
                logger.warning(
                    "request.variable.missing",
                    variable=mapping.process_variable,
                    api_field=mapping.api_field,
                )
                continue
            set_dotted(request, mapping.api_field, convert_value(value, mapping.data_type))
        logger.debug("request.template.built", fields=len(request))
        return request


# ==============================================================================
# AGENT INPUT DATA
# ==============================================================================


class InputDataBuilder:
    """Builds the ``data`` object sent to an agent."""

    def __init__(self, results: ResultStore, *, resolver: PlaceholderResolver | None = None) -> None:
        self._results = results
        self._resolver = resolver or PlaceholderResolver()

    async def build(
        self,
        agent: AgentConfig,
        context: PipelineContext,
        *,
        filename: str | None = None,
        properties: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if agent.inputs:
            return await self.build_items(
                agent.inputs, context.variables, properties, timeout=timeout
            )
        if agent.legacy_input is not None:
            return await self.build_legacy(
                agent.legacy_input, context, filename=filename, timeout=timeout
            )
        return {}

    async def build_items(
        self,
        items: Sequence[InputItem],
        variables: Mapping[str, Any],
        properties: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Resolve each configured input into one entry of the ``data`` object.

        String values pass through the placeholder resolver first; entries
        that resolve to an empty value are omitted.
        """
        data: dict[str, Any] = {}
        for item in items:
            value = self._resolver.resolve_structure(item.value, variables, properties)
            if value is None or value == "":
                logger.debug("inputs.item.empty", key=item.key)
                continue
            if item.type is InputType.MINIO_FILE:
                data[item.key] = await self._load_file(str(value), timeout=timeout)
            elif item.type is InputType.MINIO_JSON:
                data[item.key] = await self._load_json(
                    str(value), item.source_json_path, timeout=timeout
                )
            else:
                data[item.key] = value
        return data

    async def _load_file(self, key: str, *, timeout: float | None) -> str:
        try:
            if timeout is None:
                payload = await self._results.object_store.get(key)
            else:
                async with asyncio.timeout(timeout):
                    payload = await self._results.object_store.get(key)
        except (StorageError, TimeoutError) as exc:
            raise InputResolutionError(f"Failed to load input file '{key}'", detail=str(exc)) from exc
        logger.debug("inputs.file.loaded", key=key, size=len(payload))
        return base64.b64encode(payload).decode("ascii")

    async def _load_json(self, key: str, source_path: str, *, timeout: float | None) -> Any:
        try:
            envelope = await self._results.retrieve(key, timeout=timeout)
        except StorageError as exc:
            raise InputResolutionError(
                f"Failed to load stored result '{key}'", detail=exc.message
            ) from exc
        document = envelope.get("apiResponse")
        if document is None:
            raise InputResolutionError(f"Stored result '{key}' has no apiResponse")
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except ValueError as exc:
                raise InputResolutionError(f"Stored result '{key}' is not valid JSON") from exc
        if not source_path:
            return document
        try:
            return resolve_path(document, source_path)
        except ProjectionSkipped as exc:
            raise InputResolutionError(
                f"Path '{source_path}' not found in stored result '{key}'"
            ) from exc

    async def build_legacy(
        self,
        mapping: LegacyInputMapping,
        context: PipelineContext,
        *,
        filename: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Build ``data`` from a single-source input description."""
        data: dict[str, Any] = {}
        if mapping.source == "documentVariable":
            if filename is None:
                raise InputResolutionError(
                    "Agent reads the current document but no filename was given"
                )
            paths = context.get_variable("documentPaths") or {}
            key = paths.get(filename)
            if not key:
                raise InputResolutionError(f"No stored path recorded for document '{filename}'")
            encoded = await self._load_file(key, timeout=timeout)
            if mapping.transformation == "toBase64":
                data["base64_img"] = encoded
        elif mapping.source == "processVariable":
            name = mapping.variable_name or ""
            value = context.get_variable(name)
            if isinstance(value, str):
                data["data" if mapping.transformation == "wrapInData" else name] = value
        elif mapping.source == "chainedOutput":
            output = await self._chained_output(mapping.chain_from or "", context, filename, timeout)
            if mapping.transformation == "wrapAnswerInData":
                data["data"] = output
        return data

    async def _chained_output(
        self,
        chain_from: str,
        context: PipelineContext,
        filename: str | None,
        timeout: float | None,
    ) -> Any:
        file_map = context.get_variable("fileProcessMap") or {}
        entries = file_map.get(filename) or {}
        if f"{chain_from}_output" in entries:
            return entries[f"{chain_from}_output"]
        entry = entries.get(chain_from)
        if isinstance(entry, Mapping) and entry.get("minioPath"):
            envelope = await self._results.retrieve(entry["minioPath"], timeout=timeout)
            return envelope.get("apiResponse")
        logger.warning("inputs.chained.missing", chain_from=chain_from, filename=filename)
        return None


__all__ = [
    "InputDataBuilder",
    "RANDOM_ID_TOKEN",
    "RequestTemplate",
    "TIMESTAMP_TOKEN",
    "UUID_TOKEN",
    "VariableMapping",
    "generate_dynamic_value",
]
