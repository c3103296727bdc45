"""Consolidation of per-document extraction results.

Key Responsibilities:
    - Merge per-document ``{documentType: fields}`` maps into one claim level
      structure, keeping the most complete value for every field
    - Read extraction answers out of stored result envelopes
    - Track the per-document stage outcomes (``fileProcessMap``) of a ticket

Merge Rules:
    - A document type seen for the first time is copied in
    - Two nested maps merge field by field with the same rules
    - A missing or null existing field takes the new value
    - When both values are non-null, the new value wins only when its string
      form is strictly longer and is neither ``"null"`` nor empty, so on equal
      length the earlier document wins

Failure Semantics:
    - A document that cannot be loaded or parsed is skipped and counted
    - A run in which no document contributed raises
      :class:`ConsolidationFailed`
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

import structlog

from Claims_Pipeline.observability.metrics import record_consolidation
from Claims_Pipeline.orchestration.models import parse_json_if_possible
from Claims_Pipeline.utils.errors import ConsolidationFailed, MergeSkipped

logger = structlog.get_logger(__name__)

DocumentTypeMap = Mapping[str, Any]
DocumentSource = Union[DocumentTypeMap, Callable[[], DocumentTypeMap]]
AsyncLoader = Callable[[str], Awaitable[DocumentTypeMap]]

API_CALL_SUCCESS = "success"
API_CALL_FAILED = "failed"


# ==============================================================================
# MERGE
# ==============================================================================


def value_text(value: Any) -> str:
    """String form used to compare the completeness of two values."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def merge_fields(existing: dict[str, Any], incoming: Mapping[str, Any]) -> None:
    """Merge ``incoming`` into ``existing`` in place."""
    for key, new_value in incoming.items():
        current = existing.get(key)
        if current is None:
            existing[key] = copy.deepcopy(new_value)
        elif isinstance(current, dict) and isinstance(new_value, Mapping):
            merge_fields(current, new_value)
        elif new_value is not None:
            new_text = value_text(new_value)
            if len(new_text) > len(value_text(current)) and new_text not in ("", "null"):
                existing[key] = copy.deepcopy(new_value)


@dataclass(slots=True)
class MergeResult:
    structure: dict[str, Any] = field(default_factory=dict)
    merged: int = 0
    skipped: int = 0
    skipped_files: list[str] = field(default_factory=list)


class ConsolidationMerger:
    """Merges document type maps in the order they are supplied."""

    def merge(self, inputs: Iterable[tuple[str, DocumentSource]]) -> MergeResult:
        """Merge ``(filename, document)`` pairs.

        ``document`` is either the document type map itself or a zero argument
        callable returning it; a callable that raises skips that document.
        """
        result = MergeResult()
        for filename, source in inputs:
            try:
                document = source() if callable(source) else source
                self._merge_document(result.structure, filename, document)
            except Exception as exc:  # noqa: BLE001
                self._skip(result, filename, exc)
            else:
                result.merged += 1
        return self._finish(result)

    async def merge_async(self, filenames: Sequence[str], loader: AsyncLoader) -> MergeResult:
        """Merge documents fetched by ``loader`` one at a time, in order."""
        result = MergeResult()
        for filename in filenames:
            try:
                document = await loader(filename)
                self._merge_document(result.structure, filename, document)
            except Exception as exc:  # noqa: BLE001
                self._skip(result, filename, exc)
            else:
                result.merged += 1
        return self._finish(result)

    @staticmethod
    def _merge_document(structure: dict[str, Any], filename: str, document: Any) -> None:
        if not isinstance(document, Mapping):
            raise MergeSkipped(
                f"Document '{filename}' is not a map of document types", filename=filename
            )
        contributed = False
        for document_type, fields in document.items():
            if not isinstance(fields, Mapping):
                logger.debug(
                    "consolidation.type.ignored", filename=filename, document_type=document_type
                )
                continue
            existing = structure.get(document_type)
            if isinstance(existing, dict):
                merge_fields(existing, fields)
                logger.debug("consolidation.type.merged", filename=filename, document_type=document_type)
            else:
                structure[document_type] = copy.deepcopy(dict(fields))
                logger.debug("consolidation.type.added", filename=filename, document_type=document_type)
            contributed = True
        if not contributed:
            raise MergeSkipped(f"Document '{filename}' has no document types", filename=filename)

    @staticmethod
    def _skip(result: MergeResult, filename: str, exc: Exception) -> None:
        result.skipped += 1
        result.skipped_files.append(filename)
        logger.warning(
            "consolidation.document.skipped",
            filename=filename,
            error=str(exc) or type(exc).__name__,
        )

    @staticmethod
    def _finish(result: MergeResult) -> MergeResult:
        record_consolidation(result.merged, result.skipped)
        logger.info(
            "consolidation.completed",
            merged=result.merged,
            skipped=result.skipped,
            document_types=len(result.structure),
        )
        if result.merged == 0:
            raise ConsolidationFailed(
                "No document contributed data to consolidation",
                extra={"skipped": result.skipped, "files": list(result.skipped_files)},
            )
        return result


# ==============================================================================
# ENVELOPE ANSWERS
# ==============================================================================


def extract_answer(envelope: Mapping[str, Any], *, filename: str | None = None) -> dict[str, Any]:
    """Return the ``answer`` object of a normalised result envelope."""
    raw = envelope.get("apiResponse", envelope.get("rawResponse"))
    response = parse_json_if_possible(raw)
    if not isinstance(response, Mapping):
        raise MergeSkipped("Stored response is not a JSON object", filename=filename)
    if "answer" not in response:
        raise MergeSkipped("Stored response has no 'answer' field", filename=filename)
    answer = response["answer"]
    if isinstance(answer, str):
        try:
            answer = json.loads(answer)
        except ValueError as exc:
            raise MergeSkipped("Answer is not valid JSON", filename=filename) from exc
    if not isinstance(answer, dict):
        raise MergeSkipped(
            f"Unexpected answer type {type(answer).__name__}", filename=filename
        )
    return answer


def extract_documents(envelope: Mapping[str, Any], *, filename: str | None = None) -> list[dict[str, Any]]:
    """Documents carried by an extraction answer.

    The answer is either one document (``{"answer": {"doc_type": ...}}``) or
    several under ``{"answer": {"response": [...]}}``.
    """
    answer = extract_answer(envelope, filename=filename)
    response = answer.get("response")
    if isinstance(response, list):
        return [item for item in response if isinstance(item, dict)]
    return [answer]


def build_consolidated_request(agent_id: str, documents: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    return {
        "agentid": agent_id,
        "data": {
            "doc_fhir": [dict(document) for document in documents],
            "consolidatedAt": int(time.time() * 1000),
            "totalDocuments": len(documents),
        },
    }


# ==============================================================================
# PER-DOCUMENT STATE
# ==============================================================================


class DocumentStateStore:
    """Per-ticket ``fileProcessMap``: filename to stage name to outcome.

    Writes for one ticket are serialised by a lock owned by that ticket.
    """

    def __init__(self) -> None:
        self._maps: dict[str, dict[str, dict[str, Any]]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self, ticket_id: str, filenames: Iterable[str]) -> None:
        async with self._locks[ticket_id]:
            file_map = self._maps.setdefault(ticket_id, {})
            for filename in filenames:
                file_map.setdefault(filename, {})

    async def load(self, ticket_id: str, file_map: Mapping[str, Mapping[str, Any]]) -> None:
        """Seed the ticket's state from a previously published map."""
        async with self._locks[ticket_id]:
            current = self._maps.setdefault(ticket_id, {})
            for filename, stages in file_map.items():
                current.setdefault(filename, {}).update(copy.deepcopy(dict(stages)))

    async def record(
        self,
        ticket_id: str,
        filename: str,
        stage: str,
        payload: Mapping[str, Any],
    ) -> dict[str, dict[str, Any]]:
        """Store the outcome of ``stage`` for one document; returns a snapshot."""
        async with self._locks[ticket_id]:
            file_map = self._maps.setdefault(ticket_id, {})
            file_map.setdefault(filename, {})[stage] = dict(payload)
            logger.debug("consolidation.state.recorded", ticket_id=ticket_id, filename=filename, stage=stage)
            return copy.deepcopy(file_map)

    def snapshot(self, ticket_id: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._maps.get(ticket_id, {}))

    def successful(self, ticket_id: str, stage: str) -> list[tuple[str, dict[str, Any]]]:
        """Documents whose ``stage`` entry succeeded, in insertion order."""
        entries = []
        for filename, stages in self._maps.get(ticket_id, {}).items():
            entry = stages.get(stage)
            if isinstance(entry, Mapping) and str(entry.get("apiCall", "")).lower() == API_CALL_SUCCESS:
                entries.append((filename, dict(entry)))
        return entries

    def clear(self, ticket_id: str | None = None) -> None:
        if ticket_id is None:
            self._maps.clear()
            self._locks.clear()
        else:
            self._maps.pop(ticket_id, None)
            self._locks.pop(ticket_id, None)


def stage_entry(*, success: bool, minio_path: str | None, agent_id: str, status_code: int | None) -> dict[str, Any]:
    """Shape of one ``fileProcessMap`` stage entry."""
    return {
        "apiCall": API_CALL_SUCCESS if success else API_CALL_FAILED,
        "minioPath": minio_path,
        "agentId": agent_id,
        "statusCode": status_code,
    }


__all__ = [
    "API_CALL_FAILED",
    "API_CALL_SUCCESS",
    "ConsolidationMerger",
    "DocumentStateStore",
    "MergeResult",
    "build_consolidated_request",
    "extract_answer",
    "extract_documents",
    "merge_fields",
    "stage_entry",
    "value_text",
]
