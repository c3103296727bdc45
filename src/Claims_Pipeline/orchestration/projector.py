"""Projection of agent responses into variables and derived artifacts.

Key Responsibilities:
    - Apply simple ``{variable: path}`` mappings to a response document
    - Write a projected value as a new stored artifact
    - Apply the unified output mapping (patterns A to D) of an agent

Failure Semantics:
    - A path that cannot be resolved skips only that mapping; it is logged and
      counted but never aborts the remaining mappings
    - Storage failures while writing an artifact raise
      :class:`OutputMappingError`
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from Claims_Pipeline.observability.metrics import record_projection_skip
from Claims_Pipeline.orchestration.coercion import convert_value, to_text
from Claims_Pipeline.orchestration.jsonpath import resolve_path
from Claims_Pipeline.orchestration.models import (
    MergePath,
    MergeSourceType,
    OutputDescriptor,
    PipelineContext,
    ResultEnvelope,
    StoreIn,
    VariableProjection,
    parse_json_if_possible,
)
from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver
from Claims_Pipeline.storage.base import StorageError
from Claims_Pipeline.storage.results import ResultStore
from Claims_Pipeline.utils.errors import OutputMappingError, ProjectionSkipped

logger = structlog.get_logger(__name__)

MAX_PROCESS_VAR_SIZE = 3500
_VARIABLE_REFERENCE = re.compile(r"^\{\{(.+)\}\}$")
_SKIP = object()


@dataclass(slots=True)
class ProjectionReport:
    """Outcome of one projection run."""

    variables: dict[str, Any] = field(default_factory=dict)
    extracted: dict[str, Any] = field(default_factory=dict)
    stored: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    oversized: list[str] = field(default_factory=list)

    def merge(self, other: ProjectionReport) -> ProjectionReport:
        self.variables.update(other.variables)
        self.extracted.update(other.extracted)
        self.stored.update(other.stored)
        self.skipped.extend(other.skipped)
        self.oversized.extend(other.oversized)
        return self


def _response_document(source: ResultEnvelope | Any) -> Any:
    if isinstance(source, ResultEnvelope):
        return parse_json_if_possible(source.raw_response)
    return parse_json_if_possible(source)


def _serialized_size(value: Any) -> int:
    return len(to_text(value))


def _collect(merged: dict[str, Any], repeated: set[str], key: str, value: Any) -> None:
    """Add ``value`` under ``key``; repeated keys gather their values in a list."""
    if key in repeated:
        merged[key].append(value)
    elif key in merged:
        merged[key] = [merged[key], value]
        repeated.add(key)
    else:
        merged[key] = value


class ResponseProjector:
    """Derives variables and artifacts from agent responses."""

    def __init__(
        self,
        results: ResultStore,
        *,
        resolver: PlaceholderResolver | None = None,
        max_variable_size: int = MAX_PROCESS_VAR_SIZE,
    ) -> None:
        self._results = results
        self._resolver = resolver or PlaceholderResolver()
        self._max_variable_size = max_variable_size

    # ------------------------------------------------------------------
    # Simple mappings
    # ------------------------------------------------------------------
    def project(
        self,
        source: ResultEnvelope | Any,
        mapping: Mapping[str, str | Mapping[str, Any] | VariableProjection],
        variables: dict[str, Any],
    ) -> ProjectionReport:
        """Set one variable per mapping entry from the response document.

        ``source`` is a response document or a :class:`ResultEnvelope`, in
        which case paths address its parsed raw response. Entries are either a
        bare path or ``{path|jsonPath, dataType, defaultValue}``. Numeric data
        types fall back to ``0`` on unparseable input. A ``defaultValue`` of
        ``{{name}}`` refers to another variable.
        """
        document = _response_document(source)
        report = ProjectionReport()
        for name, entry in mapping.items():
            projection = self._as_projection(entry)
            value = self._extract(document, name, projection, variables)
            if value is _SKIP:
                report.skipped.append(name)
                continue
            report.extracted[name] = value
            if _serialized_size(value) >= self._max_variable_size:
                logger.warning(
                    "projection.variable.oversized",
                    variable=name,
                    size=_serialized_size(value),
                    limit=self._max_variable_size,
                )
                report.oversized.append(name)
                continue
            variables[name] = value
            report.variables[name] = value
        return report

    @staticmethod
    def _as_projection(entry: str | Mapping[str, Any] | VariableProjection) -> VariableProjection:
        if isinstance(entry, VariableProjection):
            return entry
        if isinstance(entry, str):
            return VariableProjection(path=entry)
        return VariableProjection.model_validate(dict(entry))

    def _extract(
        self,
        document: Any,
        name: str,
        projection: VariableProjection,
        variables: Mapping[str, Any],
    ) -> Any:
        try:
            value = resolve_path(document, projection.path)
        except ProjectionSkipped as exc:
            value = None
            reason = exc.message
        else:
            reason = "value is null"
        if value is None:
            if projection.default_value is None:
                record_projection_skip("variable")
                logger.warning("projection.skipped", variable=name, path=projection.path, reason=reason)
                return _SKIP
            value = self._default(projection.default_value, variables)
            if value is None:
                record_projection_skip("variable")
                logger.warning("projection.default.unresolved", variable=name)
                return _SKIP
        return convert_value(value, projection.data_type, numeric_fallback=0)

    @staticmethod
    def _default(default: Any, variables: Mapping[str, Any]) -> Any:
        if isinstance(default, str):
            match = _VARIABLE_REFERENCE.match(default.strip())
            if match:
                return variables.get(match.group(1).strip())
        return default

    async def project_to_store(
        self,
        source: ResultEnvelope | Any,
        path: str,
        context: PipelineContext,
        stage_name: str,
        artifact_name: str,
        *,
        timeout: float | None = None,
    ) -> str | None:
        """Write the value at ``path`` as a new artifact and return its key.

        Returns ``None`` when the path cannot be resolved.
        """
        document = _response_document(source)
        try:
            value = resolve_path(document, path)
        except ProjectionSkipped as exc:
            record_projection_skip("artifact")
            logger.warning("projection.skipped", artifact=artifact_name, path=path, reason=exc.message)
            return None
        key = self._results.key_for(context, stage_name, artifact_name)
        return await self._results.store_json(key, value, timeout=timeout)

    # ------------------------------------------------------------------
    # Unified output mapping
    # ------------------------------------------------------------------
    async def apply_output_mapping(
        self,
        envelope: ResultEnvelope,
        descriptors: Mapping[str, OutputDescriptor],
        context: PipelineContext,
        *,
        properties: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProjectionReport:
        """Apply every output descriptor to the envelope.

        Paths address the full envelope with ``rawResponse`` parsed, e.g.
        ``$.rawResponse.answer``.
        """
        document = envelope.to_projection_source()
        report = ProjectionReport()
        for key, descriptor in descriptors.items():
            try:
                if descriptor.merge_variables:
                    await self._apply_merge(key, descriptor, document, context, properties, report, timeout)
                else:
                    await self._apply_single(key, descriptor, document, context, properties, report, timeout)
            except (StorageError, ValueError, TypeError) as exc:
                logger.error("projection.output_mapping.failed", key=key, error=str(exc))
                raise OutputMappingError(
                    f"Failed to process output mapping key '{key}': {exc}",
                    extra={"key": key},
                ) from exc
        return report

    async def _apply_single(
        self,
        key: str,
        descriptor: OutputDescriptor,
        document: Any,
        context: PipelineContext,
        properties: Mapping[str, str] | None,
        report: ProjectionReport,
        timeout: float | None,
    ) -> None:
        try:
            value = resolve_path(document, descriptor.path)
        except ProjectionSkipped:
            record_projection_skip("output")
            logger.warning("projection.output.path_missing", key=key, path=descriptor.path)
            report.skipped.append(key)
            return
        value = convert_value(value, descriptor.data_type)

        if descriptor.store_in is StoreIn.OBJECT_STORAGE:
            await self._store_output(key, descriptor, value, context, properties, report, timeout)
            return
        context.set_variable(key, value)
        report.variables[key] = value
        report.extracted[key] = value
        logger.info("projection.output.variable", key=key, path=descriptor.path)

    async def _apply_merge(
        self,
        key: str,
        descriptor: OutputDescriptor,
        document: Any,
        context: PipelineContext,
        properties: Mapping[str, str] | None,
        report: ProjectionReport,
        timeout: float | None,
    ) -> None:
        if not descriptor.merge_paths:
            logger.warning("projection.output.merge_empty", key=key)
            report.skipped.append(key)
            return
        merged: dict[str, Any] = {}
        repeated: set[str] = set()
        for index, merge_path in enumerate(descriptor.merge_paths):
            key_name = merge_path.key_name or f"key{index}"
            value = await self._merge_value(key, index, merge_path, document, context, properties, timeout)
            if value is _SKIP:
                continue
            _collect(merged, repeated, key_name, value)

        if descriptor.store_in is StoreIn.OBJECT_STORAGE:
            await self._store_output(key, descriptor, merged, context, properties, report, timeout)
            return
        serialized = json.dumps(merged)
        context.set_variable(key, serialized)
        report.variables[key] = serialized
        report.extracted[key] = merged
        logger.info("projection.output.merged", key=key, sources=len(descriptor.merge_paths))

    async def _merge_value(
        self,
        key: str,
        index: int,
        merge_path: MergePath,
        document: Any,
        context: PipelineContext,
        properties: Mapping[str, str] | None,
        timeout: float | None,
    ) -> Any:
        if merge_path.source_type is MergeSourceType.PROCESS_VARIABLE:
            if not merge_path.variable_name:
                logger.warning("projection.merge.variable_name_missing", key=key, entry=index)
                return _SKIP
            value = context.get_variable(merge_path.variable_name)
            if value is None:
                logger.warning(
                    "projection.merge.variable_missing",
                    key=key,
                    entry=index,
                    variable=merge_path.variable_name,
                )
                return _SKIP
            return parse_json_if_possible(value.strip()) if isinstance(value, str) else value

        if merge_path.source_type is MergeSourceType.MINIO_FILE:
            source_key = self._merge_source_key(merge_path, context, properties)
            if not source_key:
                logger.warning("projection.merge.source_missing", key=key, entry=index)
                return _SKIP
            try:
                stored = await self._results.load_json(source_key, timeout=timeout)
            except StorageError as exc:
                logger.warning(
                    "projection.merge.download_failed", key=key, entry=index, source=source_key, error=exc.message
                )
                return _SKIP
            source_document = stored
        else:
            source_document = document

        try:
            value = resolve_path(source_document, merge_path.path)
        except ProjectionSkipped as exc:
            record_projection_skip("merge")
            logger.warning("projection.merge.path_missing", key=key, entry=index, reason=exc.message)
            return _SKIP
        return convert_value(value, merge_path.data_type)

    def _merge_source_key(
        self,
        merge_path: MergePath,
        context: PipelineContext,
        properties: Mapping[str, str] | None,
    ) -> str | None:
        if merge_path.source_path:
            return self._resolver.resolve(merge_path.source_path, context.variables, properties)
        if merge_path.variable_name:
            value = context.get_variable(merge_path.variable_name)
            return str(value) if value else None
        return None

    async def _store_output(
        self,
        key: str,
        descriptor: OutputDescriptor,
        value: Any,
        context: PipelineContext,
        properties: Mapping[str, str] | None,
        report: ProjectionReport,
        timeout: float | None,
    ) -> None:
        target = self._resolver.resolve(descriptor.target_path, context.variables, properties)
        if not target:
            logger.warning("projection.output.target_missing", key=key)
            report.skipped.append(key)
            return
        stored_key = await self._results.store_json(target, value, timeout=timeout)
        variable = descriptor.target_var_name or f"{key}_minioPath"
        context.set_variable(variable, stored_key)
        report.variables[variable] = stored_key
        report.stored[key] = stored_key
        logger.info("projection.output.stored", key=key, target=stored_key, variable=variable)


__all__ = ["MAX_PROCESS_VAR_SIZE", "ProjectionReport", "ResponseProjector"]
