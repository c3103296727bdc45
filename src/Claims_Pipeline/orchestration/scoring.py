"""Scoring calls (FWA decisioning, claim cost computation, ...).

Each scoring type has a ``scoring.<type>`` section with ``enabled``,
``apiEndpoint``, ``requestTemplate`` and ``responseMapping``. Any failure is
raised as a :class:`WorkflowError` with the code ``"failed" + Type``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from Claims_Pipeline.orchestration.config_store import ConfigurationCache
from Claims_Pipeline.orchestration.invoker import AgentInvoker, ResolvedEndpoint
from Claims_Pipeline.orchestration.models import PipelineContext
from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver
from Claims_Pipeline.orchestration.projector import ProjectionReport, ResponseProjector
from Claims_Pipeline.orchestration.request_builder import RequestTemplate
from Claims_Pipeline.utils.errors import PipelineError, WorkflowError

logger = structlog.get_logger(__name__)

SPRING_API_TOKEN = "${springApiUrl}"


def scoring_error_code(scoring_type: str) -> str:
    """``fwaDecisioning`` -> ``failedFwaDecisioning``."""
    if not scoring_type:
        return "failed"
    return "failed" + scoring_type[0].upper() + scoring_type[1:]


class ScoringStage:
    def __init__(
        self,
        configurations: ConfigurationCache,
        invoker: AgentInvoker,
        projector: ResponseProjector,
        *,
        resolver: PlaceholderResolver | None = None,
    ) -> None:
        self._configurations = configurations
        self._invoker = invoker
        self._projector = projector
        self._resolver = resolver or PlaceholderResolver()

    async def run(
        self,
        context: PipelineContext,
        scoring_type: str,
        *,
        properties: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProjectionReport | None:
        """Call the scoring API and project its response into variables.

        Returns ``None`` when the scoring type is disabled.
        """
        if not scoring_type:
            raise ValueError("scoring_type is required")
        code = scoring_error_code(scoring_type)
        try:
            configuration = self._configurations.get(context.workflow_key, context.tenant_id)
            section = configuration.scoring(scoring_type)
            if not bool(section.get("enabled", True)):
                logger.warning("scoring.disabled", scoring_type=scoring_type)
                return None

            spring_api = configuration.optional_external_api("springAPI")
            endpoint = self._endpoint(section, context, properties or {}, spring_api)
            body = RequestTemplate.from_blob(section.get("requestTemplate")).build(context.variables)
            logger.info("scoring.call.started", scoring_type=scoring_type, url=endpoint.url)
            response = await self._invoker.post(scoring_type, endpoint, body, timeout=timeout)
            report = self._projector.project(
                response.text, section.get("responseMapping") or {}, context.variables
            )
        except WorkflowError:
            raise
        except PipelineError as exc:
            logger.error("scoring.failed", scoring_type=scoring_type, code=exc.code, error=exc.message)
            raise WorkflowError(f"Scoring execution failed: {exc.message}", code=code) from exc
        except (ValueError, TypeError, KeyError) as exc:
            logger.error("scoring.failed", scoring_type=scoring_type, error=str(exc))
            raise WorkflowError(f"Scoring execution failed: {exc}", code=code) from exc

        logger.info(
            "scoring.completed",
            scoring_type=scoring_type,
            variables=sorted(report.variables),
            skipped=report.skipped,
        )
        return report

    def _endpoint(
        self,
        section: Mapping[str, Any],
        context: PipelineContext,
        properties: Mapping[str, str],
        spring_api: Mapping[str, Any],
    ) -> ResolvedEndpoint:
        template = str(section.get("apiEndpoint") or "")
        if not template:
            raise ValueError("Scoring configuration has no apiEndpoint")
        if SPRING_API_TOKEN in template:
            base = properties.get("springapi.url") or spring_api.get("baseUrl")
            if not base:
                raise ValueError("Property 'springapi.url' is not configured")
            template = template.replace(SPRING_API_TOKEN, str(base))
        url = self._resolver.resolve(template, context.variables, properties) or ""
        endpoint = ResolvedEndpoint(url=url)
        api_key = properties.get("springapi.api.key") or spring_api.get("apiKey")
        if api_key:
            endpoint.headers["X-API-Key"] = str(api_key).strip()
        return endpoint


__all__ = ["ScoringStage", "scoring_error_code"]
