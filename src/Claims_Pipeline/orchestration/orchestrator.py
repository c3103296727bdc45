"""Stage driver invoked by the workflow engine once per stage or document.

Key Responsibilities:
    - Resolve the stage number and bind the ticket id as correlation id
    - Build agent inputs, call the agent and persist the full result envelope
    - Project responses into variables and derived artifacts
    - Record per-document outcomes and consolidate them into one structure
    - Delegate ticket creation and scoring calls

Failure Semantics:
    - Configuration and storage errors always propagate
    - A failed agent call raises :class:`WorkflowError` with the agent's error
      code unless the agent continues on error; fan-outs escalate only when
      no agent or document produced a usable result
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from Claims_Pipeline.config.properties import PropertyRegistry, TenantProperties
from Claims_Pipeline.config.settings import AppSettings
from Claims_Pipeline.orchestration.config_store import (
    ConfigurationCache,
    ConfigurationStore,
    FileConfigurationStore,
    InMemoryConfigurationStore,
    WorkflowConfiguration,
)
from Claims_Pipeline.orchestration.consolidation import (
    ConsolidationMerger,
    DocumentStateStore,
    MergeResult,
    build_consolidated_request,
    extract_answer,
    extract_documents,
    stage_entry,
)
from Claims_Pipeline.orchestration.id_generator import RelationalStore, TicketIdGenerator
from Claims_Pipeline.orchestration.invoker import AgentEndpointResolver, AgentInvoker
from Claims_Pipeline.orchestration.models import AgentConfig, PipelineContext, ResultEnvelope
from Claims_Pipeline.orchestration.placeholders import PlaceholderResolver
from Claims_Pipeline.orchestration.projector import ProjectionReport, ResponseProjector
from Claims_Pipeline.orchestration.request_builder import InputDataBuilder
from Claims_Pipeline.orchestration.scoring import ScoringStage
from Claims_Pipeline.orchestration.stages import StageTracker, UnmappedStrategy
from Claims_Pipeline.storage.base import StorageError
from Claims_Pipeline.storage.object_store import ObjectStoreRegistry, create_object_store
from Claims_Pipeline.storage.paths import CONSOLIDATED_ARTIFACT, StoragePathBuilder
from Claims_Pipeline.storage.results import KeyScheme, ResultStore
from Claims_Pipeline.utils.errors import (
    AgentCallFailed,
    ConsolidationFailed,
    MergeSkipped,
    WorkflowError,
)
from Claims_Pipeline.utils.logging import correlation_scope

logger = structlog.get_logger(__name__)

FILE_PROCESS_MAP = "fileProcessMap"
CONSOLIDATED_REQUEST_FILENAME = "consolidated.json"
TICKET_STAGE = "GenerateTicketIDAndWorkflowName"


@dataclass(slots=True)
class TenantServices:
    """Storage bound collaborators for one tenant."""

    results: ResultStore
    inputs: InputDataBuilder
    projector: ResponseProjector


class PipelineOrchestrator:
    """Composes the pipeline components behind one stage-level API."""

    def __init__(
        self,
        *,
        configurations: ConfigurationCache,
        stores: ObjectStoreRegistry,
        invoker: AgentInvoker,
        properties: PropertyRegistry,
        stages: StageTracker | None = None,
        documents: DocumentStateStore | None = None,
        merger: ConsolidationMerger | None = None,
        key_scheme: KeyScheme = KeyScheme.SIMPLE,
        paths: StoragePathBuilder | None = None,
        relational: RelationalStore | None = None,
        document_concurrency: int = 4,
    ) -> None:
        self._configurations = configurations
        self._stores = stores
        self._invoker = invoker
        self._properties = properties
        self._stages = stages or StageTracker()
        self._documents = documents or DocumentStateStore()
        self._merger = merger or ConsolidationMerger()
        self._key_scheme = KeyScheme(key_scheme)
        self._paths = paths or StoragePathBuilder()
        self._relational = relational
        self._concurrency = max(1, document_concurrency)
        self._resolver = PlaceholderResolver()
        self._tenants: dict[str, TenantServices] = {}

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        config_store: ConfigurationStore | None = None,
        stores: ObjectStoreRegistry | None = None,
        properties: PropertyRegistry | None = None,
        invoker: AgentInvoker | None = None,
        relational: RelationalStore | None = None,
    ) -> PipelineOrchestrator:
        if config_store is None:
            directory = settings.config_store.path
            config_store = (
                FileConfigurationStore(directory) if directory else InMemoryConfigurationStore()
            )
        return cls(
            configurations=ConfigurationCache(config_store),
            stores=stores or ObjectStoreRegistry(lambda _tenant: create_object_store(settings.object_storage)),
            invoker=invoker or AgentInvoker.from_settings(settings.agent_client),
            properties=properties or PropertyRegistry(settings.config_store.properties_path),
            stages=StageTracker(
                strategy=UnmappedStrategy(settings.stages.fallback),
                sentinel=settings.stages.sentinel,
            ),
            key_scheme=KeyScheme(settings.results.key_scheme),
            paths=StoragePathBuilder(settings.object_storage.root_folder),
            relational=relational,
            document_concurrency=settings.document_concurrency,
        )

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def configurations(self) -> ConfigurationCache:
        return self._configurations

    @property
    def documents(self) -> DocumentStateStore:
        return self._documents

    @property
    def stages(self) -> StageTracker:
        return self._stages

    def services(self, tenant_id: str) -> TenantServices:
        services = self._tenants.get(tenant_id)
        if services is None:
            results = ResultStore(self._stores.get(tenant_id), scheme=self._key_scheme, paths=self._paths)
            services = TenantServices(
                results=results,
                inputs=InputDataBuilder(results, resolver=self._resolver),
                projector=ResponseProjector(results, resolver=self._resolver),
            )
            self._tenants[tenant_id] = services
        return services

    def results(self, tenant_id: str) -> ResultStore:
        return self.services(tenant_id).results

    def _configuration(self, context: PipelineContext) -> WorkflowConfiguration:
        return self._configurations.get(context.workflow_key, context.tenant_id)

    def _tenant_properties(self, tenant_id: str) -> TenantProperties:
        return self._properties.get(tenant_id)

    # ------------------------------------------------------------------
    # Ticket creation
    # ------------------------------------------------------------------
    async def generate_ticket(
        self,
        context: PipelineContext,
        config_key: str,
        *,
        stage_name: str = TICKET_STAGE,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Run the ticket creation steps configured under ``config_key``."""
        if self._relational is None:
            raise WorkflowError(
                "No relational store configured for ticket generation", code="ticketGenerationFailed"
            )
        self._stages.enter(context, stage_name)
        generator = TicketIdGenerator(
            self._configurations,
            self._stores.get(context.tenant_id),
            self._relational,
            documents=self._documents,
        )
        if timeout is None:
            return await generator.run(context, config_key)
        async with asyncio.timeout(timeout):
            return await generator.run(context, config_key)

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------
    async def run_agent(
        self,
        context: PipelineContext,
        agent: AgentConfig | str,
        *,
        filename: str | None = None,
        stage_name: str | None = None,
        is_loop_iteration: bool = False,
        timeout: float | None = None,
    ) -> ResultEnvelope:
        """Run one agent for the current stage, optionally for one document."""
        configuration = self._configuration(context)
        if isinstance(agent, str):
            agent = configuration.agent(agent)
        stage = stage_name or agent.agent_id
        number = self._stages.enter(context, stage, is_loop_iteration=is_loop_iteration)
        with correlation_scope(context.ticket_id or None):
            logger.info(
                "orchestrator.agent.started",
                agent_id=agent.agent_id,
                stage=stage,
                stage_number=number,
                filename=filename,
            )
            return await self._run_agent(
                context, configuration, agent, stage, number, filename, timeout
            )

    async def _run_agent(
        self,
        context: PipelineContext,
        configuration: WorkflowConfiguration,
        agent: AgentConfig,
        stage: str,
        stage_number: int,
        filename: str | None,
        timeout: float | None,
    ) -> ResultEnvelope:
        services = self.services(context.tenant_id)
        properties = self._tenant_properties(context.tenant_id)
        data = await services.inputs.build(
            agent, context, filename=filename, properties=properties, timeout=timeout
        )
        endpoint = AgentEndpointResolver(
            properties,
            agent_api=configuration.optional_external_api("agentAPI"),
            resolver=self._resolver,
        ).resolve(agent.endpoint, context.variables)

        failure: AgentCallFailed | None = None
        try:
            envelope = await self._invoker.invoke(agent, data, endpoint=endpoint, timeout=timeout)
        except AgentCallFailed as exc:
            failure = exc
            envelope = ResultEnvelope.build(agent.agent_id, exc.status_code or 0, exc.body)

        report = ProjectionReport()
        if failure is None and agent.variables_to_set:
            report = services.projector.project(envelope, agent.variables_to_set, context.variables)
            envelope = envelope.with_extracted(report.extracted)

        artifact = filename or f"{agent.agent_id}_result"
        key = await services.results.store(
            context, stage, artifact, envelope, stage_number=stage_number, timeout=timeout
        )
        context.set_variable(f"{agent.agent_id}_MinioPath", key)
        if filename is not None:
            await self._record_document(context, filename, agent.agent_id, envelope, key)

        if failure is not None:
            if self._fails_stage(agent):
                raise WorkflowError(
                    f"Critical agent '{agent.label}' failed: {failure.message}",
                    code=agent.error_handling.error_code,
                    extra={"agent_id": agent.agent_id, "status_code": failure.status_code},
                ) from failure
            logger.warning(
                "orchestrator.agent.continued",
                agent_id=agent.agent_id,
                status_code=failure.status_code,
            )
            return envelope

        if agent.output_mapping:
            report.merge(
                await services.projector.apply_output_mapping(
                    envelope, agent.output_mapping, context, properties=properties, timeout=timeout
                )
            )
        logger.info(
            "orchestrator.agent.completed",
            agent_id=agent.agent_id,
            key=key,
            variables=sorted(report.variables),
            skipped=report.skipped,
        )
        return envelope

    @staticmethod
    def _fails_stage(agent: AgentConfig) -> bool:
        handling = agent.error_handling
        if handling.continue_on_error:
            return False
        if agent.legacy_input is not None and not agent.critical:
            return False
        return handling.on_failure == "throwError"

    async def _record_document(
        self,
        context: PipelineContext,
        filename: str,
        agent_id: str,
        envelope: ResultEnvelope,
        key: str,
    ) -> None:
        if not context.ticket_id:
            raise WorkflowError("Per-document results require a bound ticket id", code="ticketMissing")
        snapshot = await self._documents.record(
            context.ticket_id,
            filename,
            agent_id,
            stage_entry(
                success=envelope.success,
                minio_path=key,
                agent_id=agent_id,
                status_code=envelope.status_code,
            ),
        )
        context.set_variable(FILE_PROCESS_MAP, snapshot)

    async def run_agents(
        self,
        context: PipelineContext,
        *,
        filename: str | None = None,
        stage_name: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, ResultEnvelope]:
        """Run every enabled agent in order as one stage."""
        agents = self._configuration(context).agents()
        outcomes: dict[str, ResultEnvelope] = {}
        for index, agent in enumerate(agents):
            outcomes[agent.agent_id] = await self.run_agent(
                context,
                agent,
                filename=filename,
                stage_name=stage_name,
                is_loop_iteration=index > 0,
                timeout=timeout,
            )
        if agents and not any(envelope.success for envelope in outcomes.values()):
            stage = stage_name or context.stage_name
            raise WorkflowError.from_stage(stage, f"All {len(agents)} agents failed in stage '{stage}'")
        return outcomes

    async def run_documents(
        self,
        context: PipelineContext,
        agent_id: str,
        filenames: Sequence[str],
        *,
        stage_name: str | None = None,
        concurrency: int | None = None,
        timeout: float | None = None,
    ) -> dict[str, ResultEnvelope]:
        """Run one agent over several documents sharing a single stage number."""
        if not filenames:
            return {}
        agent = self._configuration(context).agent(agent_id)
        stage = stage_name or agent.agent_id
        self._stages.enter(context, stage)
        if context.ticket_id and not self._documents.snapshot(context.ticket_id):
            existing = context.get_variable(FILE_PROCESS_MAP)
            if isinstance(existing, Mapping):
                await self._documents.load(context.ticket_id, existing)
        semaphore = asyncio.Semaphore(max(1, concurrency or self._concurrency))

        async def _one(filename: str) -> ResultEnvelope:
            async with semaphore:
                return await self.run_agent(
                    context,
                    agent,
                    filename=filename,
                    stage_name=stage,
                    is_loop_iteration=True,
                    timeout=timeout,
                )

        envelopes = await asyncio.gather(*(_one(filename) for filename in filenames))
        outcomes = dict(zip(filenames, envelopes))
        if not any(envelope.success for envelope in envelopes):
            raise WorkflowError.from_stage(stage, f"Agent '{agent_id}' failed for every document")
        return outcomes

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------
    def _source_entries(
        self, context: PipelineContext, source_stage: str, filenames: Sequence[str] | None
    ) -> list[tuple[str, dict[str, Any] | None]]:
        file_map = self._documents.snapshot(context.ticket_id) or copy.deepcopy(
            context.get_variable(FILE_PROCESS_MAP) or {}
        )
        names = list(filenames) if filenames is not None else list(file_map)
        entries = []
        for name in names:
            entry = (file_map.get(name) or {}).get(source_stage)
            entries.append((name, dict(entry) if isinstance(entry, Mapping) else None))
        return entries

    async def _load_source(
        self, results: ResultStore, filename: str, entry: dict[str, Any] | None, timeout: float | None
    ) -> Mapping[str, Any]:
        if entry is None:
            raise MergeSkipped(f"No recorded result for '{filename}'", filename=filename)
        if str(entry.get("apiCall", "")).lower() != "success":
            raise MergeSkipped(f"Source call failed for '{filename}'", filename=filename)
        key = entry.get("minioPath")
        if not key:
            raise MergeSkipped(f"No stored path for '{filename}'", filename=filename)
        try:
            return await results.retrieve(str(key), timeout=timeout)
        except StorageError as exc:
            raise MergeSkipped(f"Failed to load '{key}': {exc.message}", filename=filename) from exc

    async def consolidate(
        self,
        context: PipelineContext,
        source_stage: str,
        filenames: Sequence[str] | None = None,
        *,
        stage_name: str = "FHIRConsolidator",
        timeout: float | None = None,
    ) -> MergeResult:
        """Merge the answers recorded under ``source_stage`` for every document.

        The merged structure is stored as the ``consolidated`` artifact of
        ``stage_name`` and its key published as ``<stage_name>_MinioPath``.
        """
        number = self._stages.enter(context, stage_name)
        results = self.results(context.tenant_id)
        entries = dict(self._source_entries(context, source_stage, filenames))

        async def _loader(filename: str) -> Mapping[str, Any]:
            envelope = await self._load_source(results, filename, entries[filename], timeout)
            return extract_answer(envelope, filename=filename)

        with correlation_scope(context.ticket_id or None):
            try:
                result = await self._merger.merge_async(list(entries), _loader)
            except ConsolidationFailed as exc:
                raise WorkflowError.from_stage(
                    stage_name, f"Consolidation failed: {exc.message}", cause=exc
                ) from exc

            key = results.key_for(context, stage_name, CONSOLIDATED_ARTIFACT, stage_number=number)
            await results.store_json(key, result.structure, timeout=timeout)
            context.set_variable(f"{stage_name}_MinioPath", key)
            logger.info(
                "orchestrator.consolidated",
                stage=stage_name,
                stage_number=number,
                key=key,
                merged=result.merged,
                skipped=result.skipped,
            )
            return result

    async def build_consolidated_request(
        self,
        context: PipelineContext,
        source_stage: str,
        target_agent_id: str,
        filenames: Sequence[str] | None = None,
        *,
        stage_name: str = "FHIRConsolidator",
        timeout: float | None = None,
    ) -> str:
        """Collect every document answer into one request for ``target_agent_id``.

        The request is stored in the stage's processed folder and its key
        returned and published as ``<stage_name>_RequestPath``.
        """
        number = self._stages.enter(context, stage_name)
        results = self.results(context.tenant_id)
        documents: list[dict[str, Any]] = []
        for filename, entry in self._source_entries(context, source_stage, filenames):
            try:
                envelope = await self._load_source(results, filename, entry, timeout)
                documents.extend(extract_documents(envelope, filename=filename))
            except MergeSkipped as exc:
                logger.warning("orchestrator.request.document_skipped", filename=filename, error=exc.message)
        request = build_consolidated_request(target_agent_id, documents)
        key = self._paths.processed_path(
            context.tenant_id,
            context.workflow_key,
            context.ticket_id,
            number,
            stage_name,
            CONSOLIDATED_REQUEST_FILENAME,
        )
        await results.store_json(key, request, timeout=timeout)
        context.set_variable(f"{stage_name}_RequestPath", key)
        logger.info("orchestrator.request.stored", key=key, documents=len(documents))
        return key

    async def copy_to_stage(
        self,
        context: PipelineContext,
        source_keys: Sequence[str],
        stage_number: int,
        task_name: str,
        *,
        timeout: float | None = None,
    ) -> list[str]:
        """Copy earlier outputs into the uploaded folder of a later stage.

        Raises:
            StorageError: A source key is missing or the store failed; copies
                made before the failure are kept.
        """
        results = self.results(context.tenant_id)
        copied = []
        for source in source_keys:
            target = self._paths.uploaded_path(
                context.tenant_id,
                context.workflow_key,
                context.ticket_id,
                stage_number,
                task_name,
                source.rsplit("/", 1)[-1],
            )
            copied.append(await results.copy(source, target, timeout=timeout))
        return copied

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    async def score(
        self, context: PipelineContext, scoring_type: str, *, timeout: float | None = None
    ) -> ProjectionReport | None:
        stage = ScoringStage(
            self._configurations,
            self._invoker,
            self.services(context.tenant_id).projector,
            resolver=self._resolver,
        )
        with correlation_scope(context.ticket_id or None):
            return await stage.run(
                context,
                scoring_type,
                properties=self._tenant_properties(context.tenant_id),
                timeout=timeout,
            )

    async def aclose(self) -> None:
        await self._invoker.aclose()


__all__ = ["PipelineOrchestrator", "TenantServices"]
