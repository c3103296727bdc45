"""Observability helpers (Prometheus metrics)."""

from .metrics import (
    record_agent_call,
    record_consolidation,
    record_projection_skip,
    record_result_stored,
    record_stage_transition,
)

__all__ = [
    "record_agent_call",
    "record_consolidation",
    "record_projection_skip",
    "record_result_stored",
    "record_stage_transition",
]
