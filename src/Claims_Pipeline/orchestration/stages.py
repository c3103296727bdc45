"""Stage numbering for workflow instances.

Stage numbers name the numbered storage folders (``{n}_{task}``) and only
ever move forward. All iterations of a multi-document loop share one number.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

import structlog

from Claims_Pipeline.observability.metrics import record_stage_transition
from Claims_Pipeline.orchestration.models import PipelineContext
from Claims_Pipeline.storage.paths import sanitize_task_name

logger = structlog.get_logger(__name__)

STAGE_VARIABLE = "stageNumber"
UNMAPPED_SENTINEL = 99

HEALTH_CLAIM_WORKFLOW = "HealthClaim"

HEALTH_CLAIM_STAGES: dict[str, int] = {
    "GenerateTicketIDAndWorkflowName": 1,
    "Generate TicketID And WorkflowName": 1,
    "Generate TicketID and Workflow Name": 1,
    "VerifyMasterData": 2,
    "Verify Master Data": 2,
    "IdentifyForgedDocuments": 3,
    "Identify Forged Documents": 3,
    "DocumentClassifier": 4,
    "Document Classifier": 4,
    "Doc Classifier": 4,
    "DocClassifier": 4,
    "DocTypeSplitter": 5,
    "Doc Type Splitter": 5,
    "OCROnDoc": 6,
    "OCR On Doc": 6,
    "OcrToStatic": 7,
    "OCR To Static": 7,
    "FHIRConsolidator": 8,
    "FHIR Consolidator": 8,
    "SubmissionValidator": 9,
    "Submission Validator": 9,
    "FHIRAnalyser": 10,
    "FHIR Analyser": 10,
    "FHIRAnalyzer": 10,
    "UIDisplayer": 11,
    "UI Displayer": 11,
    "LoadUIFields": 12,
    "Load UI Fields": 12,
    "VerifyExtractedInfo": 13,
    "Verify Extracted Info": 13,
    "PolicyCoherence": 14,
    "Policy Coherence": 14,
    "MedicalCoherence": 15,
    "Medical Coherence": 15,
    "LoadFinalReviewFields": 16,
    "Load Final Review Fields": 16,
    "FinalReviewTask": 17,
    "Final Review Task": 17,
    "FWADecisioning": 18,
    "FWA Decisioning": 18,
    "ClaimCostComputation": 19,
    "Claim Cost Computation": 19,
    "ApproveClaim": 20,
    "Approve Claim": 20,
}


class UnmappedStrategy(str, Enum):
    """What an unmapped task name resolves to."""

    COUNTER = "counter"
    SENTINEL = "sentinel"


class WorkflowStageMapping:
    """Static task name to stage number table."""

    def __init__(self, stages: Mapping[str, int] | None = None) -> None:
        self._stages = dict(stages or {})
        self._folded = {name.lower(): number for name, number in self._stages.items()}

    @classmethod
    def from_ordered(cls, task_names: Iterable[str]) -> WorkflowStageMapping:
        """Number tasks by their position in the workflow, starting at 1."""
        return cls({name: index for index, name in enumerate(task_names, start=1)})

    def lookup(self, task_name: str | None) -> int | None:
        """Exact match first, then a case-insensitive match."""
        if not task_name:
            return None
        if task_name in self._stages:
            return self._stages[task_name]
        return self._folded.get(task_name.lower())

    def __contains__(self, task_name: object) -> bool:
        return isinstance(task_name, str) and self.lookup(task_name) is not None

    def __len__(self) -> int:
        return len(self._stages)


HEALTH_CLAIM_MAPPING = WorkflowStageMapping(HEALTH_CLAIM_STAGES)


def parse_stage_number(value: Any) -> int:
    """Read a stage number from an int or numeric string; anything else is 0.

    >>> parse_stage_number("7")
    7
    >>> parse_stage_number("seven")
    0
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            logger.warning("stages.number.invalid", value=value)
            return 0
    return 0


class StageTracker:
    """Assigns stage numbers to workflow steps.

    ``next_stage`` is the counter scheme: a loop iteration reuses the current
    number, any other call advances it by one. ``resolve_number`` consults the
    static table first and falls back according to ``strategy``.
    """

    def __init__(
        self,
        *,
        strategy: UnmappedStrategy | str = UnmappedStrategy.COUNTER,
        mappings: Mapping[str, WorkflowStageMapping] | None = None,
        sentinel: int = UNMAPPED_SENTINEL,
    ) -> None:
        self._strategy = UnmappedStrategy(strategy)
        self._mappings = {
            key.lower(): mapping
            for key, mapping in (
                mappings if mappings is not None else {HEALTH_CLAIM_WORKFLOW: HEALTH_CLAIM_MAPPING}
            ).items()
        }
        self._sentinel = sentinel

    @property
    def strategy(self) -> UnmappedStrategy:
        return self._strategy

    def current_stage(self, context: PipelineContext) -> int:
        return parse_stage_number(context.get_variable(STAGE_VARIABLE, 0))

    def next_stage(
        self, context: PipelineContext, is_loop_iteration: bool, task_name: str | None = None
    ) -> int:
        """Advance the counter by one, or reuse it inside a loop iteration.

        The new number is written to both the ``stageNumber`` variable and
        ``context.stage_number``.
        """
        current = self.current_stage(context)
        if is_loop_iteration:
            record_stage_transition("loop")
            logger.debug("stages.loop.reused", stage_number=current)
            return current
        advanced = current + 1
        self._persist(context, advanced, task_name)
        record_stage_transition("advance")
        logger.info("stages.advanced", previous=current, stage_number=advanced)
        return advanced

    def mapping_for(self, workflow_key: str) -> WorkflowStageMapping | None:
        return self._mappings.get((workflow_key or "").lower())

    def resolve_number(
        self,
        context: PipelineContext,
        task_name: str,
        *,
        is_loop_iteration: bool = False,
    ) -> int:
        """Stage number for ``task_name`` in the context's workflow."""
        mapping = self.mapping_for(context.workflow_key)
        number = mapping.lookup(task_name) if mapping is not None else None
        if number is not None:
            if number >= self.current_stage(context):
                self._persist(context, number, task_name)
            record_stage_transition("mapped")
            return number
        if self._strategy is UnmappedStrategy.SENTINEL:
            logger.warning("stages.unmapped.sentinel", task_name=task_name, stage_number=self._sentinel)
            record_stage_transition("sentinel")
            return self._sentinel
        logger.warning("stages.unmapped.counter", task_name=task_name)
        return self.next_stage(context, is_loop_iteration, task_name)

    def enter(
        self,
        context: PipelineContext,
        task_name: str,
        *,
        is_loop_iteration: bool = False,
    ) -> int:
        """Resolve the number for ``task_name`` and move the context into it.

        A sentinel number applies to ``task_name`` alone; the context keeps
        its current stage.
        """
        number = self.resolve_number(context, task_name, is_loop_iteration=is_loop_iteration)
        if self._is_sentinel(context, task_name):
            return number
        if number >= context.stage_number:
            context.enter_stage(number, task_name)
        return number

    @staticmethod
    def folder_for(stage_number: int, task_name: str | None) -> str:
        """``{n}_{task}`` folder name.

        >>> StageTracker.folder_for(3, "Identify Forged Documents")
        '3_Identify_Forged_Documents'
        """
        return f"{stage_number}_{sanitize_task_name(task_name)}"

    def _is_sentinel(self, context: PipelineContext, task_name: str) -> bool:
        if self._strategy is not UnmappedStrategy.SENTINEL:
            return False
        mapping = self.mapping_for(context.workflow_key)
        return mapping is None or mapping.lookup(task_name) is None

    @staticmethod
    def _persist(context: PipelineContext, number: int, task_name: str | None = None) -> None:
        context.set_variable(STAGE_VARIABLE, number)
        if number >= context.stage_number:
            context.enter_stage(number, task_name or context.stage_name)


__all__ = [
    "HEALTH_CLAIM_MAPPING",
    "HEALTH_CLAIM_STAGES",
    "HEALTH_CLAIM_WORKFLOW",
    "STAGE_VARIABLE",
    "StageTracker",
    "UNMAPPED_SENTINEL",
    "UnmappedStrategy",
    "WorkflowStageMapping",
    "parse_stage_number",
]
