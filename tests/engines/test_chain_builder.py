"""
Tests for the pure approval chain builder.

Tests cover:
- Review levels by priority
- Finance step above the threshold, always last
- Operations lead first for full closures
- Emergency timeouts
- Determinism: identical inputs give byte-identical plans
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from work_engines.chain_builder import build, requires_finance_approval, review_level_count
from work_kernel.domain.approval import (
    ApprovalLevel,
    ApproverRole,
    ChainPolicy,
)
from work_kernel.domain.work_request import (
    ImpactLevel,
    Priority,
    WorkRequest,
    WorkType,
)

POLICY = ChainPolicy(
    review_approvers=("supervisor", "manager"),
    operations_lead_id="ops-lead",
    finance_approver_id="finance",
    finance_threshold=Decimal("10000"),
)


# =========================================================================
# Factory helpers
# =========================================================================


def make_request(
    priority: Priority = Priority.MEDIUM,
    cost: Decimal | None = Decimal("500"),
    impact_level: ImpactLevel = ImpactLevel.NONE,
    work_type: WorkType = WorkType.MAINTENANCE,
) -> WorkRequest:
    return WorkRequest(
        id=uuid4(),
        organization_id="org-1",
        title="Repair gate 4 jet bridge",
        requested_by="requestor",
        priority=priority,
        impact_level=impact_level,
        work_type=work_type,
        estimated_total_cost=cost,
    )


# =========================================================================
# Scenarios
# =========================================================================


class TestChainShape:
    def test_medium_priority_low_cost_is_single_step(self):
        plan = build(work_request=make_request(Priority.MEDIUM, Decimal("500")), policy=POLICY)

        assert len(plan) == 1
        step = plan.steps[0]
        assert step.position == 1
        assert step.approver_id == "supervisor"
        assert step.approval_level == ApprovalLevel.STANDARD
        assert step.timeout_hours == 24

    def test_critical_priority_high_cost_ends_with_finance(self):
        plan = build(
            work_request=make_request(Priority.CRITICAL, Decimal("50000")), policy=POLICY,
        )

        assert len(plan) >= 3
        assert [s.approver_id for s in plan.steps] == ["supervisor", "manager", "finance"]
        last = plan.steps[-1]
        assert last.approver_role == ApproverRole.FINANCE
        assert last.approval_level == ApprovalLevel.EXECUTIVE
        assert last.timeout_hours == 48
        assert plan.approval_level == ApprovalLevel.EXECUTIVE

    @pytest.mark.parametrize("priority,levels", [
        (Priority.LOW, 1),
        (Priority.MEDIUM, 1),
        (Priority.HIGH, 2),
        (Priority.CRITICAL, 2),
    ])
    def test_review_levels_by_priority(self, priority, levels):
        assert review_level_count(priority) == levels
        plan = build(work_request=make_request(priority), policy=POLICY)
        assert len(plan) == levels

    def test_cost_at_threshold_needs_no_finance(self):
        wr = make_request(cost=Decimal("10000"))
        assert not requires_finance_approval(wr, POLICY)
        assert all(
            s.approver_role != ApproverRole.FINANCE
            for s in build(work_request=wr, policy=POLICY).steps
        )

    def test_missing_cost_needs_no_finance(self):
        assert not requires_finance_approval(make_request(cost=None), POLICY)

    def test_full_closure_puts_operations_lead_first(self):
        plan = build(
            work_request=make_request(impact_level=ImpactLevel.FULL_CLOSURE), policy=POLICY,
        )

        assert [s.approver_role for s in plan.steps] == [
            ApproverRole.OPERATIONS_LEAD, ApproverRole.REVIEWER,
        ]
        assert [s.position for s in plan.steps] == [1, 2]

    def test_emergency_work_uses_emergency_timeout_everywhere(self):
        plan = build(
            work_request=make_request(
                Priority.CRITICAL, Decimal("50000"), work_type=WorkType.EMERGENCY,
            ),
            policy=POLICY,
        )
        assert {s.timeout_hours for s in plan.steps} == {2}


# =========================================================================
# Determinism
# =========================================================================


class TestDeterminism:
    @given(
        priority=st.sampled_from(list(Priority)),
        impact=st.sampled_from(list(ImpactLevel)),
        work_type=st.sampled_from(list(WorkType)),
        cost=st.one_of(
            st.none(),
            st.decimals(min_value=0, max_value=1_000_000, places=2),
        ),
    )
    def test_identical_inputs_give_identical_bytes(self, priority, impact, work_type, cost):
        first = make_request(priority, cost, impact, work_type)
        # Different id, same classification.
        second = make_request(priority, cost, impact, work_type)

        a = build(work_request=first, policy=POLICY)
        b = build(work_request=second, policy=POLICY)

        assert a.canonical_bytes() == b.canonical_bytes()
        assert a.fingerprint == b.fingerprint
        assert [s.position for s in a.steps] == list(range(1, len(a) + 1))

    def test_build_emits_engine_trace(self, captured_logs):
        build(work_request=make_request(), policy=POLICY)

        traces = [r for r in captured_logs() if r["message"] == "WORK_ENGINE_TRACE"]
        assert traces
        assert traces[-1]["engine_name"] == "chain_builder"
        assert len(traces[-1]["input_fingerprint"]) == 16
