"""Storage abstractions exports."""

from .base import DEFAULT_CONTENT_TYPE, JSON_CONTENT_TYPE, ObjectStore, StorageError
from .object_store import (
    InMemoryObjectStore,
    ObjectStoreRegistry,
    S3ObjectStore,
    create_object_store,
)
from .paths import (
    CONSOLIDATED_ARTIFACT,
    FolderRole,
    StoragePathBuilder,
    sanitize_artifact_name,
    sanitize_task_name,
    simple_result_key,
)
from .results import KeyScheme, ResultStore, normalize_envelope

__all__ = [
    "CONSOLIDATED_ARTIFACT",
    "DEFAULT_CONTENT_TYPE",
    "FolderRole",
    "InMemoryObjectStore",
    "JSON_CONTENT_TYPE",
    "KeyScheme",
    "ObjectStore",
    "ObjectStoreRegistry",
    "ResultStore",
    "S3ObjectStore",
    "StorageError",
    "StoragePathBuilder",
    "create_object_store",
    "normalize_envelope",
    "sanitize_artifact_name",
    "sanitize_task_name",
    "simple_result_key",
]
