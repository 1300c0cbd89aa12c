"""
work_engines.chain_builder -- Derive the ordered approval step list.

Responsibility:
    Turn a work request's classification (priority, estimated cost,
    impact level, work type) into an ``ApprovalChainPlan`` under a
    ``ChainPolicy``.

Architecture position:
    Engines -- pure decision layer, zero I/O.
    May only import work_kernel.domain types.

Invariants enforced:
    - AP-4 (determinism): the plan depends only on the request's
      classification fields and the policy.  No clock, no ids, no
      randomness.  Identical inputs give byte-identical
      ``canonical_bytes()``.
    - Positions are 1-based and contiguous.

Policy:
    1. impact_level == full_closure  -> operations lead first (elevated)
    2. priority high / critical      -> two review levels (standard, elevated)
       priority low / medium         -> one review level (standard)
    3. estimated_total_cost > policy.finance_threshold
                                     -> finance approver last (executive)
    Every step takes its timeout from its level, except emergency work,
    where every step uses ``policy.emergency_timeout_hours``.
"""

from __future__ import annotations

from work_engines.tracer import traced_engine
from work_kernel.domain.approval import (
    ApprovalChainPlan,
    ApprovalLevel,
    ApproverRole,
    ChainPolicy,
    StepPlan,
)
from work_kernel.domain.work_request import (
    ImpactLevel,
    Priority,
    WorkRequest,
    WorkType,
)

_TWO_LEVEL_PRIORITIES = frozenset({Priority.HIGH, Priority.CRITICAL})
_REVIEW_LEVELS = (ApprovalLevel.STANDARD, ApprovalLevel.ELEVATED)


def review_level_count(priority: Priority) -> int:
    return 2 if priority in _TWO_LEVEL_PRIORITIES else 1


def requires_finance_approval(work_request: WorkRequest, policy: ChainPolicy) -> bool:
    cost = work_request.estimated_total_cost
    return cost is not None and cost > policy.finance_threshold


@traced_engine(
    "chain_builder", "1.0",
    fingerprint_fields=("work_request", "policy"),
)
def build(work_request: WorkRequest, policy: ChainPolicy) -> ApprovalChainPlan:
    """Build the approval plan for ``work_request``.

    Args:
        work_request: The submitted request.  Only classification fields
            are read.
        policy: Approver assignments, finance threshold and timeouts.

    Returns:
        ApprovalChainPlan with at least one step.
    """
    slots: list[tuple[str, ApproverRole, ApprovalLevel]] = []

    if work_request.impact_level == ImpactLevel.FULL_CLOSURE:
        slots.append((
            policy.operations_lead_id,
            ApproverRole.OPERATIONS_LEAD,
            ApprovalLevel.ELEVATED,
        ))

    for level_index in range(review_level_count(work_request.priority)):
        slots.append((
            policy.review_approvers[level_index],
            ApproverRole.REVIEWER,
            _REVIEW_LEVELS[level_index],
        ))

    if requires_finance_approval(work_request, policy):
        slots.append((
            policy.finance_approver_id,
            ApproverRole.FINANCE,
            ApprovalLevel.EXECUTIVE,
        ))

    emergency = work_request.work_type == WorkType.EMERGENCY
    steps = tuple(
        StepPlan(
            position=position,
            approver_id=approver_id,
            approver_role=role,
            approval_level=level,
            timeout_hours=(
                policy.emergency_timeout_hours if emergency else policy.timeout_for(level)
            ),
        )
        for position, (approver_id, role, level) in enumerate(slots, start=1)
    )
    return ApprovalChainPlan(steps=steps)
