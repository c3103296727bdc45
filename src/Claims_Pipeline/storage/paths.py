"""Deterministic storage key construction.

Two layouts coexist:

* simple: ``{tenant}/{workflow}/{ticket}/{stage}/{artifact}.json``
* numbered: ``{root}/{tenant}/{workflow}/{ticket}/{n}_{task}/{folder}/{filename}``
  where ``folder`` is ``userdoc/uploaded``, ``userdoc/processed`` or ``task-docs``.

Every function here is pure: identical inputs always produce the identical
key, which lets later stages re-fetch earlier outputs by recomputing the key.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_UNSAFE_ARTIFACT = re.compile(r"[^a-zA-Z0-9.-]")
_UNSAFE_TASK = re.compile(r"[^a-zA-Z0-9]")
_REPEATED_UNDERSCORE = re.compile(r"_{2,}")

DEFAULT_ROOT_FOLDER = "insurance-claims"
CONSOLIDATED_ARTIFACT = "consolidated"


class FolderRole(str, Enum):
    """Sub-folder of a numbered stage folder."""

    UPLOADED = "userdoc/uploaded"
    PROCESSED = "userdoc/processed"
    TASK_DOCS = "task-docs"


def sanitize_artifact_name(name: str | None) -> str:
    """Replace characters outside ``[A-Za-z0-9.-]`` with ``_``.

    >>> sanitize_artifact_name("Doc 1.pdf")
    'Doc_1.pdf'
    >>> sanitize_artifact_name("")
    'consolidated'
    """
    if not name:
        return CONSOLIDATED_ARTIFACT
    return _UNSAFE_ARTIFACT.sub("_", name)


def sanitize_task_name(name: str | None) -> str:
    """Normalise a task name for use in a stage folder.

    >>> sanitize_task_name("OCR to Static")
    'OCR_to_Static'
    """
    if not name or not name.strip():
        return "UnknownTask"
    cleaned = _UNSAFE_TASK.sub("_", name)
    cleaned = _REPEATED_UNDERSCORE.sub("_", cleaned).strip("_")
    return cleaned or "UnknownTask"


def simple_result_key(
    tenant_id: str,
    workflow_key: str,
    ticket_id: str,
    stage_name: str,
    artifact_name: str | None,
) -> str:
    safe = sanitize_artifact_name(artifact_name)
    return f"{tenant_id}/{workflow_key}/{ticket_id}/{stage_name}/{safe}.json"


@dataclass(frozen=True, slots=True)
class StoragePathBuilder:
    """Builds keys for the numbered stage folder layout."""

    root_folder: str = DEFAULT_ROOT_FOLDER

    def stage_folder(self, stage_number: int, task_name: str) -> str:
        return f"{stage_number}_{sanitize_task_name(task_name)}"

    def ticket_prefix(self, tenant_id: str, workflow_key: str, ticket_id: str) -> str:
        return f"{self.root_folder}/{tenant_id}/{workflow_key}/{ticket_id}"

    def stage_prefix(
        self,
        tenant_id: str,
        workflow_key: str,
        ticket_id: str,
        stage_number: int,
        task_name: str,
    ) -> str:
        prefix = self.ticket_prefix(tenant_id, workflow_key, ticket_id)
        return f"{prefix}/{self.stage_folder(stage_number, task_name)}"

    def build(
        self,
        role: FolderRole,
        tenant_id: str,
        workflow_key: str,
        ticket_id: str,
        stage_number: int,
        task_name: str,
        filename: str,
    ) -> str:
        prefix = self.stage_prefix(tenant_id, workflow_key, ticket_id, stage_number, task_name)
        return f"{prefix}/{role.value}/{filename}"

    def uploaded_path(
        self,
        tenant_id: str,
        workflow_key: str,
        ticket_id: str,
        stage_number: int,
        task_name: str,
        filename: str,
    ) -> str:
        """Key of a stage input document."""
        return self.build(
            FolderRole.UPLOADED, tenant_id, workflow_key, ticket_id, stage_number, task_name, filename
        )

    def processed_path(
        self,
        tenant_id: str,
        workflow_key: str,
        ticket_id: str,
        stage_number: int,
        task_name: str,
        filename: str,
    ) -> str:
        """Key of a transformed or split document."""
        return self.build(
            FolderRole.PROCESSED, tenant_id, workflow_key, ticket_id, stage_number, task_name, filename
        )

    def task_docs_path(
        self,
        tenant_id: str,
        workflow_key: str,
        ticket_id: str,
        stage_number: int,
        task_name: str,
        filename: str,
    ) -> str:
        """Key of an agent output."""
        return self.build(
            FolderRole.TASK_DOCS, tenant_id, workflow_key, ticket_id, stage_number, task_name, filename
        )


__all__ = [
    "CONSOLIDATED_ARTIFACT",
    "DEFAULT_ROOT_FOLDER",
    "FolderRole",
    "StoragePathBuilder",
    "sanitize_artifact_name",
    "sanitize_task_name",
    "simple_result_key",
]
