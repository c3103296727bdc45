"""Persistence of agent result envelopes.

Key Responsibilities:
    - Build deterministic keys for result envelopes (simple or numbered layout)
    - Write envelopes and derived JSON artifacts through an :class:`ObjectStore`
    - Read envelopes back in one normalised shape regardless of which
      historical shape (``rawResponse`` or ``apiResponse`` keyed) was written

Failure Semantics:
    - Every object store failure surfaces as :class:`StorageError`; there is
      no silent fallback for retrieval
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable
from enum import Enum
from typing import Any, TypeVar

import structlog

from Claims_Pipeline.observability.metrics import record_result_stored
from Claims_Pipeline.orchestration.models import (
    PipelineContext,
    ResultEnvelope,
    parse_json_if_possible,
)

from .base import JSON_CONTENT_TYPE, ObjectStore, StorageError
from .paths import StoragePathBuilder, sanitize_artifact_name, simple_result_key

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class KeyScheme(str, Enum):
    """Key layout used for result envelopes."""

    SIMPLE = "simple"
    NUMBERED = "numbered"


async def _bounded(awaitable: Awaitable[T], timeout: float | None, *, key: str) -> T:
    if timeout is None:
        return await awaitable
    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError as exc:
        raise StorageError(f"Storage operation timed out for '{key}'", status=504) from exc


def _encode(value: Any) -> bytes:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str).encode("utf-8")


def normalize_envelope(payload: bytes) -> dict[str, Any]:
    """Return the single result shape consumed by every caller.

    ``rawResponse`` keyed documents are reduced to ``agentId``,
    ``statusCode``, ``success``, ``apiResponse`` (always a string) and
    ``timestamp`` with ``extractedData`` keys flattened in. ``apiResponse``
    keyed documents are returned as stored. Anything else is treated as the
    raw response text.
    """
    text = payload.decode("utf-8", errors="replace")
    try:
        document = json.loads(text)
    except ValueError:
        document = None

    if isinstance(document, dict) and "rawResponse" in document:
        raw = document.get("rawResponse")
        result: dict[str, Any] = {
            "agentId": document.get("agentId", ""),
            "statusCode": document.get("statusCode", 0),
            "success": bool(document.get("success", False)),
            "apiResponse": raw if isinstance(raw, str) else json.dumps(raw),
            "timestamp": document.get("timestamp", 0),
        }
        extracted = document.get("extractedData")
        if isinstance(extracted, dict):
            result.update(extracted)
        return result
    if isinstance(document, dict) and "apiResponse" in document:
        return dict(document)
    return {"apiResponse": text}


class ResultStore:
    """Reads and writes result envelopes under deterministic keys."""

    def __init__(
        self,
        object_store: ObjectStore,
        *,
        scheme: KeyScheme = KeyScheme.SIMPLE,
        paths: StoragePathBuilder | None = None,
    ) -> None:
        self._store = object_store
        self._scheme = KeyScheme(scheme)
        self._paths = paths or StoragePathBuilder()

    @property
    def object_store(self) -> ObjectStore:
        return self._store

    @property
    def paths(self) -> StoragePathBuilder:
        return self._paths

    @property
    def scheme(self) -> KeyScheme:
        return self._scheme

    def key_for(
        self,
        context: PipelineContext,
        stage_name: str,
        artifact_name: str | None,
        *,
        stage_number: int | None = None,
    ) -> str:
        """Compute the envelope key for ``artifact_name`` in ``stage_name``.

        ``stage_number`` overrides ``context.stage_number`` in the numbered scheme.
        """
        if self._scheme is KeyScheme.NUMBERED:
            return self._paths.task_docs_path(
                context.tenant_id,
                context.workflow_key,
                context.ticket_id,
                context.stage_number if stage_number is None else stage_number,
                stage_name,
                f"{sanitize_artifact_name(artifact_name)}.json",
            )
        return simple_result_key(
            context.tenant_id,
            context.workflow_key,
            context.ticket_id,
            stage_name,
            artifact_name,
        )

    async def store(
        self,
        context: PipelineContext,
        stage_name: str,
        artifact_name: str | None,
        envelope: ResultEnvelope,
        *,
        stage_number: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """Persist ``envelope`` and return its key."""
        key = self.key_for(context, stage_name, artifact_name, stage_number=stage_number)
        await _bounded(
            self._store.put(key, _encode(envelope.to_document()), content_type=JSON_CONTENT_TYPE),
            timeout,
            key=key,
        )
        record_result_stored(self._scheme.value)
        logger.info(
            "results.store.written",
            key=key,
            agent_id=envelope.agent_id,
            status_code=envelope.status_code,
            stage=stage_name,
        )
        return key

    async def retrieve(self, key: str, *, timeout: float | None = None) -> dict[str, Any]:
        """Load the envelope stored at ``key`` in normalised form."""
        payload = await _bounded(self._store.get(key), timeout, key=key)
        logger.debug("results.retrieve.loaded", key=key, size=len(payload))
        return normalize_envelope(payload)

    async def retrieve_for(
        self,
        context: PipelineContext,
        stage_name: str,
        artifact_name: str | None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.retrieve(self.key_for(context, stage_name, artifact_name), timeout=timeout)

    async def exists(self, key: str) -> bool:
        return await self._store.exists(key)

    async def store_json(self, key: str, value: Any, *, timeout: float | None = None) -> str:
        """Write a derived artifact.

        Maps and lists are serialised directly; any other value is wrapped as
        ``{"value": value}``.
        """
        document = value if isinstance(value, (dict, list)) else {"value": value}
        await _bounded(
            self._store.put(key, _encode(document), content_type=JSON_CONTENT_TYPE),
            timeout,
            key=key,
        )
        logger.info("results.artifact.written", key=key, kind=type(value).__name__)
        return key

    async def load_json(self, key: str, *, timeout: float | None = None) -> Any:
        """Load a stored JSON document with ``rawResponse`` parsed into an object."""
        payload = await _bounded(self._store.get(key), timeout, key=key)
        try:
            document = json.loads(payload.decode("utf-8"))
        except ValueError as exc:
            raise StorageError(f"Object '{key}' is not valid JSON", status=422) from exc
        if isinstance(document, dict) and "rawResponse" in document:
            document["rawResponse"] = parse_json_if_possible(document["rawResponse"])
        return document

    async def copy(self, source_key: str, target_key: str, *, timeout: float | None = None) -> str:
        """Copy one object to another key, e.g. a previous stage output into a stage input."""
        payload = await _bounded(self._store.get(source_key), timeout, key=source_key)
        await _bounded(self._store.put(target_key, payload), timeout, key=target_key)
        logger.debug("results.copy", source=source_key, target=target_key)
        return target_key


__all__ = ["KeyScheme", "ResultStore", "normalize_envelope"]
