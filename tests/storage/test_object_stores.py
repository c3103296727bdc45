"""Object store backends and the per-tenant registry."""

from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError

from Claims_Pipeline.config.settings import ObjectStorageSettings
from Claims_Pipeline.storage.base import StorageError
from Claims_Pipeline.storage.object_store import (
    InMemoryObjectStore,
    ObjectStoreRegistry,
    S3ObjectStore,
    create_object_store,
)


class FakePaginator:
    def __init__(self, objects: dict[str, bytes]) -> None:
        self._objects = objects

    def paginate(self, *, Bucket: str, Prefix: str):
        yield {"Contents": [{"Key": key} for key in sorted(self._objects) if key.startswith(Prefix)]}


class FakeS3Client:
    """Minimal boto3 S3 client double."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str, Metadata: dict) -> dict:
        self.objects[Key] = Body
        self.content_types[Key] = ContentType
        return {}

    def get_object(self, *, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def head_object(self, *, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "missing"}}, "HeadObject")
        return {}

    def delete_object(self, *, Bucket: str, Key: str) -> dict:
        self.objects.pop(Key, None)
        return {}

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self.objects)


@pytest.mark.anyio("asyncio")
async def test_in_memory_store_round_trip_and_missing_key():
    store = InMemoryObjectStore()
    await store.put("a/b.json", b"{}", content_type="application/json")
    assert await store.get("a/b.json") == b"{}"
    assert await store.content_type("a/b.json") == "application/json"
    assert await store.list_prefix("a/") == ["a/b.json"]
    assert await store.delete("a/b.json") is True
    with pytest.raises(StorageError) as excinfo:
        await store.get("a/b.json")
    assert excinfo.value.problem.status == 404


@pytest.mark.anyio("asyncio")
async def test_s3_store_uses_client_and_translates_errors():
    client = FakeS3Client()
    store = S3ObjectStore("claims", client=client)
    await store.put("t/w/x.json", b"payload", content_type="application/json")
    assert client.content_types["t/w/x.json"] == "application/json"
    assert await store.get("t/w/x.json") == b"payload"
    assert await store.exists("t/w/x.json") is True
    assert await store.exists("t/w/missing.json") is False
    assert await store.list_prefix("t/") == ["t/w/x.json"]
    assert await store.delete("t/w/x.json") is True
    with pytest.raises(StorageError) as excinfo:
        await store.get("t/w/x.json")
    assert excinfo.value.problem.extra["bucket"] == "claims"


def test_create_object_store_defaults_to_memory():
    store = create_object_store(ObjectStorageSettings())
    assert isinstance(store, InMemoryObjectStore)


def test_registry_caches_one_store_per_tenant():
    created: list[str] = []

    def factory(tenant_id: str) -> InMemoryObjectStore:
        created.append(tenant_id)
        return InMemoryObjectStore()

    registry = ObjectStoreRegistry(factory)
    first = registry.get("a")
    assert registry.get("a") is first
    assert registry.get("b") is not first
    assert created == ["a", "b"]
    registry.clear()
    registry.get("a")
    assert created == ["a", "b", "a"]


def test_shared_registry_returns_same_store():
    store = InMemoryObjectStore()
    registry = ObjectStoreRegistry.shared(store)
    assert registry.get("a") is store
    assert registry.get("b") is store
