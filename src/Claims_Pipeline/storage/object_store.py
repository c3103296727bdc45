"""Object store implementations and the per-tenant store registry."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from Claims_Pipeline.config.settings import ObjectStorageSettings

from .base import DEFAULT_CONTENT_TYPE, ObjectStore, StorageError

logger = structlog.get_logger(__name__)


class InMemoryObjectStore(ObjectStore):
    """Simple in-memory object store used for tests and local runs."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._content_types: dict[str, str] = {}
        self._metadata: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> str:
        async with self._lock:
            self._data[key] = bytes(data)
            self._content_types[key] = content_type
            if metadata:
                self._metadata[key] = dict(metadata)
            else:
                self._metadata.pop(key, None)
        return key

    async def get(self, key: str) -> bytes:
        async with self._lock:
            try:
                return self._data[key]
            except KeyError as exc:
                raise StorageError(f"Object '{key}' not found", status=404) from exc

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._data

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._content_types.pop(key, None)
            self._metadata.pop(key, None)
            return self._data.pop(key, None) is not None

    async def list_prefix(self, prefix: str) -> list[str]:
        async with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))

    async def content_type(self, key: str) -> str | None:
        async with self._lock:
            return self._content_types.get(key)


class S3ObjectStore(ObjectStore):
    """S3/MinIO backed object store.

    boto3 calls are blocking and run in a worker thread. Client failures are
    translated into :class:`StorageError`.
    """

    def __init__(self, bucket: str, *, client=None) -> None:
        self._bucket = bucket
        self._client = client or boto3.client("s3")

    async def _call(self, operation: str, key: str, func: Callable[[], object]) -> object:
        try:
            return await asyncio.to_thread(func)
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "storage.s3.failed", operation=operation, bucket=self._bucket, key=key, error=str(exc)
            )
            raise StorageError(
                f"S3 {operation} failed for '{key}'", detail=str(exc), extra={"bucket": self._bucket}
            ) from exc

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
        metadata: dict[str, str] | None = None,
    ) -> str:
        await self._call(
            "put",
            key,
            lambda: self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            ),
        )
        return key

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()

        return await self._call("get", key, _read)  # type: ignore[return-value]

    async def exists(self, key: str) -> bool:
        def _head() -> bool:
            try:
                self._client.head_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                code = str(exc.response.get("Error", {}).get("Code", ""))
                if code in {"404", "NoSuchKey", "NotFound"}:
                    return False
                raise
            return True

        return await self._call("head", key, _head)  # type: ignore[return-value]

    async def delete(self, key: str) -> bool:
        existed = await self.exists(key)
        await self._call(
            "delete", key, lambda: self._client.delete_object(Bucket=self._bucket, Key=key)
        )
        return existed

    async def list_prefix(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            paginator = self._client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    key = item.get("Key")
                    if key:
                        keys.append(str(key))
            return keys

        return await self._call("list", prefix, _list)  # type: ignore[return-value]

    async def ensure_bucket(self) -> None:
        """Create the bucket when it does not exist yet."""

        def _ensure() -> None:
            try:
                self._client.head_bucket(Bucket=self._bucket)
            except ClientError:
                self._client.create_bucket(Bucket=self._bucket)
                logger.info("storage.s3.bucket_created", bucket=self._bucket)

        await self._call("ensure_bucket", self._bucket, _ensure)

    @property
    def bucket(self) -> str:
        return self._bucket


def create_object_store(settings: ObjectStorageSettings) -> ObjectStore:
    """Create object store instance based on settings."""
    if settings.backend == "memory":
        return InMemoryObjectStore()

    s3_config: dict[str, object] = {}
    if settings.endpoint_url:
        s3_config["endpoint_url"] = settings.endpoint_url
        s3_config["use_ssl"] = settings.use_tls
    if settings.access_key_id and settings.secret_access_key:
        s3_config["aws_access_key_id"] = settings.access_key_id.get_secret_value()
        s3_config["aws_secret_access_key"] = settings.secret_access_key.get_secret_value()
    if settings.region:
        s3_config["region_name"] = settings.region
    client = boto3.client("s3", **s3_config)
    return S3ObjectStore(settings.bucket, client=client)


class ObjectStoreRegistry:
    """Caches one object store per tenant.

    The registry is owned by the orchestrator; ``clear`` drops every cached
    store so changed tenant settings take effect.
    """

    def __init__(
        self,
        factory: Callable[[str], ObjectStore],
    ) -> None:
        self._factory = factory
        self._stores: dict[str, ObjectStore] = {}

    @classmethod
    def shared(cls, store: ObjectStore) -> ObjectStoreRegistry:
        """Registry returning ``store`` for every tenant."""
        return cls(lambda _tenant: store)

    def get(self, tenant_id: str) -> ObjectStore:
        store = self._stores.get(tenant_id)
        if store is None:
            store = self._factory(tenant_id)
            self._stores[tenant_id] = store
            logger.debug("storage.registry.created", tenant_id=tenant_id, store=type(store).__name__)
        return store

    def clear(self) -> None:
        self._stores.clear()


__all__ = [
    "InMemoryObjectStore",
    "ObjectStoreRegistry",
    "S3ObjectStore",
    "create_object_store",
]
