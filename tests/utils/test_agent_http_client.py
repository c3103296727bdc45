import httpx
import pytest
from pybreaker import CircuitBreakerError

from Claims_Pipeline.utils.http_client import (
    AsyncHttpClient,
    BackoffStrategy,
    CircuitBreakerConfig,
    RetryConfig,
)


@pytest.mark.anyio("asyncio")
async def test_async_client_returns_error_status_without_retry():
    calls = {"count": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500, text="failure")

    client = AsyncHttpClient(
        retry=RetryConfig(attempts=3, backoff_strategy=BackoffStrategy.NONE, jitter=False),
        transport=httpx.MockTransport(handler),
    )
    response = await client.request("POST", "https://agents.local/run", json={})
    assert response.status_code == 500
    assert calls["count"] == 1
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_async_client_retries_forced_statuses():
    calls = {"count": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 2:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    client = AsyncHttpClient(
        retry=RetryConfig(
            attempts=3,
            backoff_strategy=BackoffStrategy.NONE,
            jitter=False,
            status_forcelist=(503,),
        ),
        transport=httpx.MockTransport(handler),
    )
    response = await client.request("GET", "https://agents.local/health")
    assert response.json() == {"ok": True}
    assert calls["count"] == 2
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_async_client_circuit_breaker_opens_on_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = AsyncHttpClient(
        retry=RetryConfig(attempts=1, backoff_strategy=BackoffStrategy.NONE, jitter=False),
        transport=httpx.MockTransport(handler),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60.0),
    )
    with pytest.raises(httpx.ConnectError):
        await client.request("GET", "https://agents.local")
    with pytest.raises((httpx.ConnectError, CircuitBreakerError)):
        await client.request("GET", "https://agents.local")
    with pytest.raises(CircuitBreakerError):
        await client.request("GET", "https://agents.local")
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_open_circuit_is_scoped_to_one_host():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ocr.local":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"ok": True})

    client = AsyncHttpClient(
        retry=RetryConfig(attempts=1, backoff_strategy=BackoffStrategy.NONE, jitter=False),
        transport=httpx.MockTransport(handler),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60.0),
    )
    with pytest.raises((httpx.ConnectError, CircuitBreakerError)):
        await client.request("POST", "https://ocr.local/ocr", json={})
    with pytest.raises(CircuitBreakerError):
        await client.request("POST", "https://ocr.local/ocr", json={})

    response = await client.request("POST", "https://fraud.local/score", json={})
    assert response.status_code == 200
    assert client.breaker_for("https://fraud.local/score").current_state == "closed"
    assert client.breaker_for("https://ocr.local/ocr").current_state == "open"
    await client.aclose()


@pytest.mark.anyio("asyncio")
async def test_circuit_closes_after_successful_trial():
    healthy = {"value": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if not healthy["value"]:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"ok": True})

    client = AsyncHttpClient(
        retry=RetryConfig(attempts=1, backoff_strategy=BackoffStrategy.NONE, jitter=False),
        transport=httpx.MockTransport(handler),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.0),
    )
    with pytest.raises((httpx.ConnectError, CircuitBreakerError)):
        await client.request("GET", "https://agents.local/health")
    assert client.breaker_for("https://agents.local/health").current_state == "open"

    healthy["value"] = True
    response = await client.request("GET", "https://agents.local/health")
    assert response.status_code == 200
    assert client.breaker_for("https://agents.local/health").current_state == "closed"
    await client.aclose()
