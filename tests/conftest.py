from __future__ import annotations

import json
import os
from typing import Any

import httpx
import pytest

from Claims_Pipeline.config.properties import PropertyRegistry
from Claims_Pipeline.config.settings import get_settings
from Claims_Pipeline.orchestration.models import PipelineContext
from Claims_Pipeline.storage.object_store import InMemoryObjectStore
from Claims_Pipeline.storage.results import ResultStore

TENANT = "tenant-a"
WORKFLOW = "HealthClaim"
TICKET = "TCK-1001"


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for name in list(os.environ):
        if name.startswith("CP_"):
            monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def results(object_store: InMemoryObjectStore) -> ResultStore:
    return ResultStore(object_store)


@pytest.fixture
def context() -> PipelineContext:
    return PipelineContext(tenant_id=TENANT, workflow_key=WORKFLOW, ticket_id=TICKET)


@pytest.fixture
def properties() -> PropertyRegistry:
    registry = PropertyRegistry()
    registry.register(
        TENANT,
        {
            "agent": {"api": {"url": "http://agents.local"}},
            "springapi": {"url": "http://spring.local", "api": {"key": "spring-key"}},
        },
    )
    return registry


class RecordingTransport:
    """``httpx.MockTransport`` handler that records requests and replays responses."""

    def __init__(self, responder=None) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder or (lambda request: httpx.Response(200, json={"ok": True}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def bodies(self) -> list[Any]:
        return [json.loads(request.content) for request in self.requests]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def recording_transport() -> type[RecordingTransport]:
    return RecordingTransport
