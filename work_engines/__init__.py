"""
Module: work_engines
Responsibility:
    Package entrypoint re-exporting the pure decision engines: status
    transitions, approval chain construction and approval decision
    evaluation.

Architecture position:
    Engines -- pure decision layer, zero I/O.
    May only import work_kernel.domain and work_kernel.exceptions.
    MUST NOT import work_services or work_config.

Invariants enforced:
    - Purity: engines NEVER read the clock.  Timestamps are passed in.
    - Determinism: identical inputs always produce identical outputs.
"""

from work_engines.approval import (
    DEFAULT_REJECTION_REASON,
    DELEGATED_STATUS,
    DecisionEffect,
    authorize,
    estimate_approval_hours,
    evaluate_decision,
    next_pending_after,
    reject_repeated_decision,
    resolve_current_step,
    validate_delegation,
)
from work_engines.chain_builder import build as build_approval_chain
from work_engines.state_machine import (
    STATUS_TIMESTAMP_FIELDS,
    build_transition_patch,
    can_transition,
    legal_targets,
    transition,
    validate_transition,
)
from work_engines.tracer import traced_engine

__all__ = [
    "DEFAULT_REJECTION_REASON",
    "DELEGATED_STATUS",
    "DecisionEffect",
    "authorize",
    "estimate_approval_hours",
    "evaluate_decision",
    "next_pending_after",
    "reject_repeated_decision",
    "resolve_current_step",
    "validate_delegation",
    "build_approval_chain",
    "STATUS_TIMESTAMP_FIELDS",
    "build_transition_patch",
    "can_transition",
    "legal_targets",
    "transition",
    "validate_transition",
    "traced_engine",
]
