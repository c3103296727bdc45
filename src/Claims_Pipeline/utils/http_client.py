"""Resilient async HTTP for agent and scoring calls.

Key Responsibilities:
    - Send requests through one pooled ``httpx.AsyncClient``
    - Retry transport errors (and opted-in statuses) with ``tenacity``
    - Keep one ``pybreaker`` circuit per downstream host so a failing agent
      does not short-circuit calls to healthy ones
    - Throttle with ``aiolimiter`` and trace every request with OpenTelemetry

Collaborators:
    - Upstream: ``AgentInvoker`` (agent and scoring calls)
    - Downstream: agent APIs and the scoring API

Example:
    >>> client = AsyncHttpClient(retry=RetryConfig(attempts=2))
    >>> response = await client.request("POST", "https://agents.local/ocr", json={})
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx
import structlog
from aiolimiter import AsyncLimiter
from opentelemetry import trace
from pybreaker import (
    STATE_HALF_OPEN,
    STATE_OPEN,
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerListener,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
    wait_none,
    wait_random,
)
from tenacity.wait import wait_base

logger = structlog.get_logger(__name__)

Send = Callable[[], Awaitable[httpx.Response]]


# ==============================================================================
# CONFIGURATION
# ==============================================================================


class BackoffStrategy(str, Enum):
    NONE = "none"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class RetryConfig:
    """Attempts, backoff and timeout for one logical call.

    ``status_forcelist`` is empty by default: an agent answering with an
    error status is returned to the caller, which records it as the result.
    """

    attempts: int = 1
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    jitter: bool = True
    status_forcelist: Iterable[int] = ()
    timeout: float = 120.0

    def wait(self) -> wait_base:
        initial = max(self.backoff_initial, 0.0)
        ceiling = max(self.backoff_max, initial)
        if self.backoff_strategy is BackoffStrategy.NONE:
            strategy: wait_base = wait_none()
        elif self.backoff_strategy is BackoffStrategy.LINEAR:
            strategy = wait_incrementing(start=initial, increment=initial, max=ceiling)
        else:
            strategy = wait_exponential(multiplier=initial or 0.1, max=ceiling)
        if self.jitter and self.backoff_strategy is not BackoffStrategy.NONE:
            strategy = strategy + wait_random(0, 0.1)
        return _RetryAfterWait(strategy)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0


@dataclass(frozen=True)
class RateLimitConfig:
    rate_per_second: float = 5.0
    burst: int | None = None

    def limiter(self) -> AsyncLimiter:
        rate = max(self.rate_per_second, 1e-6)
        burst = self.burst or max(1, int(rate))
        return AsyncLimiter(burst, time_period=max(burst / rate, 1e-3))


# ==============================================================================
# RETRY SUPPORT
# ==============================================================================


class RetryableHTTPStatus(httpx.HTTPStatusError):
    """A status from ``status_forcelist``, with the server's Retry-After delay."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(
            f"Retryable status {response.status_code}", request=response.request, response=response
        )
        self.retry_after = retry_after_seconds(response)


class _RetryAfterWait(wait_base):
    def __init__(self, fallback: wait_base) -> None:
        self._fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exception, RetryableHTTPStatus) and exception.retry_after > 0:
            return exception.retry_after
        return self._fallback(retry_state)


def retry_after_seconds(response: httpx.Response) -> float:
    """Seconds requested by a ``Retry-After`` header (delta or HTTP date), else 0."""
    header = response.headers.get("Retry-After")
    if not header:
        return 0.0
    try:
        return max(float(header), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return 0.0
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max((retry_at - datetime.now(UTC)).total_seconds(), 0.0)


# ==============================================================================
# CIRCUIT BREAKERS
# ==============================================================================


class _OpenedAt(CircuitBreakerListener):
    def __init__(self) -> None:
        self.at = 0.0

    def state_change(self, cb: CircuitBreaker, old_state: Any, new_state: Any) -> None:
        if getattr(new_state, "name", None) == STATE_OPEN:
            self.at = time.monotonic()


def _reraise(exc: BaseException) -> None:
    raise exc


class _HostCircuit:
    """A pybreaker circuit driven from coroutines.

    Outcomes are replayed through :meth:`CircuitBreaker.call` after the request
    has been awaited. Once the reset timeout elapses a single request probes
    the host while concurrent callers wait for its verdict.
    """

    def __init__(self, host: str, config: CircuitBreakerConfig) -> None:
        self.host = host
        self._opened = _OpenedAt()
        self.breaker = CircuitBreaker(
            fail_max=config.failure_threshold,
            reset_timeout=config.recovery_timeout,
            listeners=[self._opened],
            name=host,
        )
        self._trial = asyncio.Lock()

    def _reject_if_open(self) -> None:
        if self.breaker.current_state != STATE_OPEN:
            return
        if time.monotonic() - self._opened.at < self.breaker.reset_timeout:
            raise CircuitBreakerError(f"Circuit for '{self.host}' is open")
        self.breaker.half_open()

    async def _observe(self, send: Send) -> httpx.Response:
        try:
            response = await send()
        except Exception as exc:
            if self.breaker.current_state != STATE_OPEN:
                self.breaker.call(_reraise, exc)
            raise
        if self.breaker.current_state != STATE_OPEN:
            self.breaker.call(lambda: response)
        return response

    async def call(self, send: Send) -> httpx.Response:
        self._reject_if_open()
        if self.breaker.current_state != STATE_HALF_OPEN:
            return await self._observe(send)
        async with self._trial:
            self._reject_if_open()
            if self.breaker.current_state == STATE_HALF_OPEN:
                logger.info("http.circuit.trial", host=self.host)
            return await self._observe(send)


# ==============================================================================
# CLIENT
# ==============================================================================


class AsyncHttpClient:
    """Pooled async client with retry, per-host circuits, throttling and tracing."""

    def __init__(
        self,
        *,
        retry: RetryConfig | None = None,
        rate_limit: RateLimitConfig | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(timeout=self._retry.timeout, transport=transport)
        self._limiter = rate_limit.limiter() if rate_limit else None
        self._breaker_config = circuit_breaker
        self._circuits: dict[str, _HostCircuit] = {}
        self._wait = self._retry.wait()
        self._tracer = trace.get_tracer(__name__)

    def breaker_for(self, url: str) -> CircuitBreaker | None:
        """The circuit guarding ``url``'s host, or ``None`` when breakers are off."""
        circuit = self._circuit(httpx.URL(url).host)
        return circuit.breaker if circuit else None

    def _circuit(self, host: str) -> _HostCircuit | None:
        if self._breaker_config is None:
            return None
        circuit = self._circuits.get(host)
        if circuit is None:
            circuit = self._circuits[host] = _HostCircuit(host, self._breaker_config)
        return circuit

    async def _send(self, method: str, url: str, kwargs: dict[str, Any]) -> httpx.Response:
        with self._tracer.start_as_current_span("claims.http.request") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", url)
            if self._limiter is None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with self._limiter:
                    response = await self._client.request(method, url, **kwargs)
            span.set_attribute("http.status_code", response.status_code)
        if response.status_code in self._retry.status_forcelist:
            raise RetryableHTTPStatus(response)
        return response

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request; error statuses are returned unless force-listed.

        Raises:
            httpx.HTTPError: Transport failure after the retry budget.
            RetryableHTTPStatus: A force-listed status persisted.
            CircuitBreakerError: The host's circuit is open.
        """
        circuit = self._circuit(httpx.URL(url).host)

        async def _attempt() -> httpx.Response:
            send = functools.partial(self._send, method, url, kwargs)
            return await circuit.call(send) if circuit else await send()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self._retry.attempts, 1)),
            wait=self._wait,
            retry=retry_if_exception_type((httpx.TransportError, RetryableHTTPStatus)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "http.request.retry",
                        url=url,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await _attempt()
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "AsyncHttpClient",
    "BackoffStrategy",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "RateLimitConfig",
    "RetryConfig",
    "RetryableHTTPStatus",
    "retry_after_seconds",
]
