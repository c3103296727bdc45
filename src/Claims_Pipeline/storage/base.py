"""Abstract storage interfaces.

The pipeline treats object storage as an opaque key to bytes store. Keys are
plain hierarchical strings and the only consistency guarantee required is
last-write-wins.

Example:
    >>> class MyObjectStore(ObjectStore):
    ...     async def put(self, key, data, *, content_type=DEFAULT_CONTENT_TYPE, metadata=None):
    ...         ...
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

from abc import ABC, abstractmethod

from Claims_Pipeline.utils.errors import PipelineError

DEFAULT_CONTENT_TYPE = "application/octet-stream"
JSON_CONTENT_TYPE = "application/json"

# ==============================================================================
# INTERFACES
# ==============================================================================


class StorageError(PipelineError):
    """Object store I/O failure. Always fatal for the calling stage."""

    default_code = "STORAGE_ERROR"


class ObjectStore(ABC):
    """Interface for object storage backends."""

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Store ``data`` under ``key`` and return the key as reference.

        Raises:
            StorageError: If the backend rejects the write.
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``.

        Raises:
            StorageError: If the key is missing or the backend fails.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return whether ``key`` is present."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key`` and report whether it existed."""

    @abstractmethod
    async def list_prefix(self, prefix: str) -> list[str]:
        """Return every key starting with ``prefix``."""


__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "JSON_CONTENT_TYPE",
    "ObjectStore",
    "StorageError",
]
