"""Outbound agent calls.

Key Responsibilities:
    - Derive the agent URL and credentials from tenant properties, falling
      back to the ``externalAPIs.agentAPI`` section of the workflow blob
    - Send ``{"agentid", "data"}`` bodies through :class:`AsyncHttpClient`
    - Turn every non-success status and transport failure into
      :class:`AgentCallFailed`

Side Effects:
    - Network I/O and Prometheus metrics only; persistence belongs to callers
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from Claims_Pipeline.config.settings import AgentClientSettings
from Claims_Pipeline.observability.metrics import record_agent_call
from Claims_Pipeline.orchestration.models import AgentConfig, AgentEndpoint, AuthMethod, ResultEnvelope
from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver
from Claims_Pipeline.utils.errors import AgentCallFailed, ConfigurationMissing
from Claims_Pipeline.utils.http_client import (
    AsyncHttpClient,
    CircuitBreakerConfig,
    CircuitBreakerError,
    RateLimitConfig,
    RetryConfig,
)

logger = structlog.get_logger(__name__)

PREFIX_ALIASES = {"dia": "agent.api"}
SHARED_CREDENTIAL_PREFIX = "ai.agent"


@dataclass(slots=True)
class ResolvedEndpoint:
    url: str
    auth: tuple[str, str] | None = None
    headers: dict[str, str] = field(default_factory=dict)


def join_url(base: str, route: str) -> str:
    """Join ``base`` and ``route`` with exactly one slash.

    >>> join_url("http://agents/", "/classify")
    'http://agents/classify'
    """
    base = base.rstrip("/")
    route = route.lstrip("/")
    return f"{base}/{route}" if route else base


class AgentEndpointResolver:
    """Resolves an :class:`AgentEndpoint` against tenant properties."""

    def __init__(
        self,
        properties: Mapping[str, str],
        *,
        agent_api: Mapping[str, Any] | None = None,
        resolver: PlaceholderResolver | None = None,
    ) -> None:
        self._properties = properties
        self._agent_api = dict(agent_api or {})
        self._resolver = resolver or PlaceholderResolver()

    @staticmethod
    def property_prefix(base_url_key: str) -> str:
        key = (base_url_key or "dia").strip()
        return PREFIX_ALIASES.get(key, key)

    def _property(self, key: str, variables: Mapping[str, Any]) -> str | None:
        value = self._properties.get(key)
        if value is None:
            return None
        return self._resolver.resolve(value, variables, self._properties)

    def resolve(
        self, endpoint: AgentEndpoint, variables: Mapping[str, Any] | None = None
    ) -> ResolvedEndpoint:
        variables = variables or {}
        prefix = self.property_prefix(endpoint.base_url_key)
        base_url = self._property(f"{prefix}.url", variables) or self._agent_api.get("baseUrl")
        if not base_url:
            raise ConfigurationMissing(
                f"Agent base URL property '{prefix}.url' is not configured",
                extra={"property": f"{prefix}.url"},
            )
        route = self._resolver.resolve(endpoint.route, variables, self._properties) or ""
        resolved = ResolvedEndpoint(url=join_url(str(base_url), route))

        if endpoint.auth_type is AuthMethod.BASIC:
            username = (
                self._property(f"{prefix}.username", variables)
                or self._property(f"{SHARED_CREDENTIAL_PREFIX}.username", variables)
                or self._agent_api.get("username")
            )
            password = (
                self._property(f"{prefix}.password", variables)
                or self._property(f"{SHARED_CREDENTIAL_PREFIX}.password", variables)
                or self._agent_api.get("password")
            )
            if not username or password is None:
                raise ConfigurationMissing(
                    f"Basic auth credentials for '{prefix}' are not configured"
                )
            resolved.auth = (str(username), str(password))
        elif endpoint.auth_type is AuthMethod.API_KEY:
            api_key = self._property(f"{prefix}.api.key", variables)
            if not api_key:
                raise ConfigurationMissing(f"API key property '{prefix}.api.key' is not configured")
            resolved.headers["X-API-Key"] = api_key.strip()
        return resolved


class AgentInvoker:
    """Calls agents and wraps successful responses into result envelopes."""

    def __init__(
        self,
        client: AsyncHttpClient,
        *,
        success_status: int = 200,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._success_status = success_status
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: AgentClientSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AgentInvoker:
        client = AsyncHttpClient(
            retry=RetryConfig(
                attempts=settings.attempts,
                backoff_initial=settings.backoff_initial,
                backoff_max=settings.backoff_max,
                timeout=settings.timeout,
            ),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=settings.failure_threshold,
                recovery_timeout=settings.recovery_timeout,
            ),
            rate_limit=(
                RateLimitConfig(rate_per_second=settings.rate_per_second)
                if settings.rate_per_second
                else None
            ),
            transport=transport,
        )
        return cls(client, success_status=settings.success_status, timeout=settings.timeout)

    @property
    def client(self) -> AsyncHttpClient:
        return self._client

    async def invoke(
        self,
        config: AgentConfig,
        payload: Any,
        *,
        endpoint: ResolvedEndpoint,
        timeout: float | None = None,
    ) -> ResultEnvelope:
        """Send ``payload`` as the ``data`` of an agent request.

        Raises:
            AgentCallFailed: On a non-success status (carrying the response
                body), a transport error, a timeout or an open circuit.
        """
        body = {"agentid": config.agent_id, "data": payload}
        response = await self._send(
            config.agent_id, endpoint, body, timeout=timeout if timeout is not None else self._timeout
        )
        return ResultEnvelope.build(
            config.agent_id,
            response.status_code,
            response.text,
            success_status=self._success_status,
        )

    async def post(
        self,
        label: str,
        endpoint: ResolvedEndpoint,
        body: Any,
        *,
        timeout: float | None = None,
    ) -> httpx.Response:
        """POST an arbitrary JSON ``body``; used for scoring calls."""
        return await self._send(
            label, endpoint, body, timeout=timeout if timeout is not None else self._timeout
        )

    async def _send(
        self,
        agent_id: str,
        endpoint: ResolvedEndpoint,
        body: Any,
        *,
        timeout: float | None,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json", **endpoint.headers}
        started = time.perf_counter()
        logger.info("agent.invoke.started", agent_id=agent_id, url=endpoint.url)
        try:
            request = self._client.request(
                "POST", endpoint.url, json=body, headers=headers, auth=endpoint.auth
            )
            if timeout is None:
                response = await request
            else:
                async with asyncio.timeout(timeout):
                    response = await request
        except (httpx.HTTPError, CircuitBreakerError, TimeoutError) as exc:
            duration = time.perf_counter() - started
            record_agent_call(agent_id, "failure", duration)
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
            logger.error(
                "agent.invoke.transport_error",
                agent_id=agent_id,
                error=str(exc) or type(exc).__name__,
                duration_seconds=round(duration, 3),
            )
            raise AgentCallFailed(
                f"Agent '{agent_id}' call failed: {type(exc).__name__}",
                agent_id=agent_id,
                status_code=status_code,
            ) from exc

        duration = time.perf_counter() - started
        if response.status_code != self._success_status:
            record_agent_call(agent_id, "failure", duration)
            logger.error(
                "agent.invoke.failed",
                agent_id=agent_id,
                status_code=response.status_code,
                duration_seconds=round(duration, 3),
            )
            raise AgentCallFailed(
                f"Agent '{agent_id}' returned status {response.status_code}",
                agent_id=agent_id,
                status_code=response.status_code,
                body=response.text,
            )
        record_agent_call(agent_id, "success", duration)
        logger.info(
            "agent.invoke.completed",
            agent_id=agent_id,
            status_code=response.status_code,
            duration_seconds=round(duration, 3),
        )
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "AgentEndpointResolver",
    "AgentInvoker",
    "ResolvedEndpoint",
    "join_url",
]
