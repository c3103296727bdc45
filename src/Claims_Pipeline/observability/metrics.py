"""Prometheus metrics for the claims pipeline.

Key Responsibilities:
    - Define Prometheus collectors for agent calls, result persistence,
      projections, consolidation runs and stage transitions
    - Provide small recording helpers so call sites never touch label plumbing

Thread Safety:
    - Thread-safe: All metric operations use atomic Prometheus operations

Example:
    >>> from Claims_Pipeline.observability.metrics import record_agent_call
    >>> record_agent_call("Forgery_Detector", "success", 1.5)
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from prometheus_client import Counter, Histogram

# ==============================================================================
# METRIC DEFINITIONS
# ==============================================================================

AGENT_CALLS_TOTAL = Counter(
    "claims_agent_calls_total",
    "Total number of agent calls by outcome",
    ["agent_id", "outcome"],
)

AGENT_CALL_DURATION_SECONDS = Histogram(
    "claims_agent_call_duration_seconds",
    "Duration of agent calls",
    ["agent_id"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

RESULTS_STORED_TOTAL = Counter(
    "claims_results_stored_total",
    "Result envelopes written to object storage",
    ["scheme"],
)

PROJECTIONS_SKIPPED_TOTAL = Counter(
    "claims_projections_skipped_total",
    "Response projections skipped because a path could not be resolved",
    ["mode"],
)

CONSOLIDATION_DOCUMENTS_TOTAL = Counter(
    "claims_consolidation_documents_total",
    "Documents seen by consolidation runs",
    ["outcome"],
)

STAGE_TRANSITIONS_TOTAL = Counter(
    "claims_stage_transitions_total",
    "Stage number requests by kind (advance or loop)",
    ["kind"],
)

# ==============================================================================
# UTILITY FUNCTIONS
# ==============================================================================


def record_agent_call(agent_id: str, outcome: str, duration_seconds: float) -> None:
    """Record one agent call.

    Args:
        agent_id: Identifier of the called agent.
        outcome: ``success`` or ``failure``.
        duration_seconds: Wall clock duration of the call.
    """
    AGENT_CALLS_TOTAL.labels(agent_id=agent_id, outcome=outcome).inc()
    AGENT_CALL_DURATION_SECONDS.labels(agent_id=agent_id).observe(max(duration_seconds, 0.0))


def record_result_stored(scheme: str) -> None:
    RESULTS_STORED_TOTAL.labels(scheme=scheme).inc()


def record_projection_skip(mode: str) -> None:
    PROJECTIONS_SKIPPED_TOTAL.labels(mode=mode).inc()


def record_consolidation(merged: int, skipped: int) -> None:
    """Record the per-document outcome counts of a consolidation run."""
    if merged:
        CONSOLIDATION_DOCUMENTS_TOTAL.labels(outcome="merged").inc(merged)
    if skipped:
        CONSOLIDATION_DOCUMENTS_TOTAL.labels(outcome="skipped").inc(skipped)


def record_stage_transition(kind: str) -> None:
    STAGE_TRANSITIONS_TOTAL.labels(kind=kind).inc()


__all__ = [
    "AGENT_CALLS_TOTAL",
    "AGENT_CALL_DURATION_SECONDS",
    "CONSOLIDATION_DOCUMENTS_TOTAL",
    "PROJECTIONS_SKIPPED_TOTAL",
    "RESULTS_STORED_TOTAL",
    "STAGE_TRANSITIONS_TOTAL",
    "record_agent_call",
    "record_consolidation",
    "record_projection_skip",
    "record_result_stored",
    "record_stage_transition",
]
