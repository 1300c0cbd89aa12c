"""
Tests for ApprovalWorkflowEngine against a real SQLite store.

Tests cover:
- initialize_workflow: chain creation, UNDER_REVIEW, refusal outside SUBMITTED
- record_decision: approve through a two-step chain, reject with moot steps
- Duplicate and out-of-order decisions are stale
- Ownership and delegation
- Approval queues only list chains whose current step the approver owns
- Resubmission after rejection builds a new chain
- A committed decision whose status write keeps failing is flagged for
  reconciliation
"""

from decimal import Decimal
from uuid import uuid4

from work_kernel.domain.approval import ApprovalDecision, ApprovalStepStatus
from work_kernel.domain.events import NotificationEventType, work_request_cache_key
from work_kernel.domain.work_request import (
    Priority,
    SubmitContext,
    WorkRequestStatus,
)
from work_kernel.exceptions import (
    ApprovalChainNotFoundError,
    InvalidDelegationError,
    StaleApprovalError,
    StatusAdvanceError,
    StorageUnavailable,
    UnauthorizedApproverError,
    WorkflowInitError,
)
from work_kernel.store.sqlalchemy_store import SqlAlchemyVersionedStore
from work_services.approval_workflow import ApprovalWorkflowEngine

SUPERVISOR = "maintenance-supervisor"
MANAGER = "maintenance-manager"
FINANCE = "finance-controller"


def status_of(lifecycle, wr_id):
    return lifecycle.get_work_request(wr_id).value.status


class TestInitializeWorkflow:
    def test_submit_creates_chain_and_enters_review(
        self, submitted_request, workflow, lifecycle, dispatcher,
    ):
        receipt = submitted_request(priority=Priority.HIGH)
        wr_id = receipt.work_request.id

        chain = workflow.get_approval_chain(wr_id).value
        assert chain.submission_number == 1
        assert [s.approver_id for s in chain.steps] == [SUPERVISOR, MANAGER]
        assert chain.current_step.approver_id == SUPERVISOR
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.UNDER_REVIEW

        activated = dispatcher.of_type(NotificationEventType.APPROVAL_STEP_ACTIVATED)
        assert activated[-1][2]["approver_id"] == SUPERVISOR

    def test_refuses_request_not_submitted(self, lifecycle, workflow, command_factory):
        draft = lifecycle.create_draft(command_factory())

        result = workflow.initialize_workflow(draft.id)

        assert isinstance(result.error, WorkflowInitError)
        assert result.error.cause.code == "INVALID_TRANSITION"
        assert workflow.get_approval_chain(draft.id).error.code == "APPROVAL_CHAIN_NOT_FOUND"

    def test_history_records_both_transitions(self, submitted_request, lifecycle):
        wr_id = submitted_request().work_request.id

        history = lifecycle.get_status_history(wr_id)

        assert [(h.from_status, h.to_status) for h in history] == [
            (WorkRequestStatus.DRAFT, WorkRequestStatus.SUBMITTED),
            (WorkRequestStatus.SUBMITTED, WorkRequestStatus.UNDER_REVIEW),
        ]
        assert [h.version for h in history] == [2, 3]


class TestDecisions:
    def test_approve_both_steps_of_two(self, submitted_request, workflow, lifecycle):
        wr_id = submitted_request(priority=Priority.CRITICAL).work_request.id

        first = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE, "ok")
        assert first.is_ok
        assert first.value.work_request_status == WorkRequestStatus.UNDER_REVIEW
        assert first.value.next_step.approver_id == MANAGER
        assert first.value.next_step.due_at is not None
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.UNDER_REVIEW

        second = workflow.record_decision(wr_id, MANAGER, ApprovalDecision.APPROVE)
        assert second.is_ok
        assert second.value.work_request_status == WorkRequestStatus.APPROVED

        wr = lifecycle.get_work_request(wr_id).value
        assert wr.status == WorkRequestStatus.APPROVED
        assert wr.approved_at is not None
        assert second.value.chain.is_complete

    def test_reject_first_of_two_moots_second(
        self, submitted_request, workflow, lifecycle, dispatcher,
    ):
        wr_id = submitted_request(priority=Priority.HIGH).work_request.id

        result = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.REJECT, "scope unclear",
        )

        assert result.is_ok
        outcome = result.value
        assert outcome.work_request_status == WorkRequestStatus.REJECTED
        assert len(outcome.moot_step_ids) == 1
        chain = outcome.chain
        assert chain.is_frozen
        assert [s.status for s in chain.steps] == [
            ApprovalStepStatus.REJECTED, ApprovalStepStatus.MOOT,
        ]
        wr = lifecycle.get_work_request(wr_id).value
        assert wr.status == WorkRequestStatus.REJECTED
        assert wr.status_reason == "scope unclear"
        # The moot step never activated.
        activated = dispatcher.of_type(NotificationEventType.APPROVAL_STEP_ACTIVATED)
        assert all(e[2]["approver_id"] != MANAGER for e in activated)

    def test_reject_without_comment_uses_default_reason(
        self, submitted_request, workflow, lifecycle,
    ):
        wr_id = submitted_request().work_request.id

        workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.REJECT)

        assert lifecycle.get_work_request(wr_id).value.status_reason == "Rejected by approver"

    def test_duplicate_decision_is_stale(self, submitted_request, workflow):
        receipt = submitted_request(priority=Priority.HIGH)
        wr_id = receipt.work_request.id
        step_id = receipt.chain.steps[0].step_id

        assert workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.APPROVE, step_id=step_id,
        ).is_ok
        again = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.APPROVE, step_id=step_id,
        )

        assert isinstance(again.error, StaleApprovalError)
        assert again.error.current_status == "approved"

    def test_decision_after_approval_is_stale(self, submitted_request, workflow):
        wr_id = submitted_request().work_request.id
        workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)

        result = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.REJECT, "late")

        assert isinstance(result.error, StaleApprovalError)

    def test_wrong_approver_refused(self, submitted_request, workflow, lifecycle):
        wr_id = submitted_request(priority=Priority.HIGH).work_request.id

        result = workflow.record_decision(wr_id, MANAGER, ApprovalDecision.APPROVE)

        assert isinstance(result.error, UnauthorizedApproverError)
        assert result.error.expected_approver_id == SUPERVISOR
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.UNDER_REVIEW

    def test_decision_notifies_and_invalidates(
        self, submitted_request, workflow, dispatcher, cache,
    ):
        wr_id = submitted_request().work_request.id

        workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)

        recorded = dispatcher.of_type(NotificationEventType.APPROVAL_DECISION_RECORDED)
        assert recorded[-1][2]["decision"] == "approve"
        changed = dispatcher.of_type(NotificationEventType.STATUS_CHANGED)
        assert changed[-1][2]["to_status"] == "approved"
        assert work_request_cache_key(wr_id) in cache.keys

    def test_unknown_request_has_no_chain(self, workflow):
        result = workflow.record_decision(uuid4(), SUPERVISOR, ApprovalDecision.APPROVE)
        assert result.error.code == "WORK_REQUEST_NOT_FOUND"


class TestDelegation:
    def test_delegate_then_delegate_approves(self, submitted_request, workflow, lifecycle):
        wr_id = submitted_request().work_request.id

        delegated = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.DELEGATE, "on leave", delegated_to="deputy",
        )

        assert delegated.is_ok
        step = delegated.value.chain.current_step
        assert step.status == ApprovalStepStatus.PENDING
        assert step.position == 1
        assert step.delegated_to == "deputy"
        assert step.delegated_from == SUPERVISOR
        assert delegated.value.chain.delegations[0].delegated_by == SUPERVISOR

        refused = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)
        assert isinstance(refused.error, UnauthorizedApproverError)

        approved = workflow.record_decision(wr_id, "deputy", ApprovalDecision.APPROVE)
        assert approved.is_ok
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.APPROVED

    def test_repeated_delegation_with_same_step_is_stale(self, submitted_request, workflow):
        receipt = submitted_request()
        wr_id = receipt.work_request.id
        step_id = receipt.chain.steps[0].step_id

        first = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.DELEGATE,
            delegated_to="deputy", step_id=step_id,
        )
        again = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.DELEGATE,
            delegated_to="deputy", step_id=step_id,
        )

        assert first.is_ok
        assert isinstance(again.error, StaleApprovalError)
        chain = workflow.get_approval_chain(wr_id).value
        assert len(chain.delegations) == 1
        assert chain.current_step.owner_id == "deputy"

    def test_self_delegation_refused(self, submitted_request, workflow):
        wr_id = submitted_request().work_request.id

        result = workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.DELEGATE, delegated_to=SUPERVISOR,
        )

        assert isinstance(result.error, InvalidDelegationError)

    def test_delegation_without_target_refused(self, submitted_request, workflow):
        wr_id = submitted_request().work_request.id

        result = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.DELEGATE)

        assert isinstance(result.error, InvalidDelegationError)

    def test_delegation_does_not_carry_to_next_submission(
        self, submitted_request, workflow, lifecycle,
    ):
        receipt = submitted_request()
        wr_id = receipt.work_request.id
        workflow.record_decision(
            wr_id, SUPERVISOR, ApprovalDecision.DELEGATE, delegated_to="deputy",
        )
        workflow.record_decision(wr_id, "deputy", ApprovalDecision.REJECT, "incomplete")
        lifecycle.resubmit(wr_id, "requestor-1")

        resubmitted = lifecycle.submit(
            wr_id, SubmitContext(user_id="requestor-1", organization_id="org-1"),
        )

        chain = resubmitted.value.chain
        assert chain.submission_number == 2
        assert chain.current_step.owner_id == SUPERVISOR


class TestPendingApprovals:
    def test_queue_lists_only_current_step_owner(self, submitted_request, workflow):
        wr_id = submitted_request(priority=Priority.HIGH).work_request.id

        assert [c.work_request_id for c in workflow.get_pending_approvals("org-1", SUPERVISOR)] == [wr_id]
        # Waiting second-level step does not count yet.
        assert workflow.get_pending_approvals("org-1", MANAGER) == []

        workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)

        assert workflow.get_pending_approvals("org-1", SUPERVISOR) == []
        assert [c.work_request_id for c in workflow.get_pending_approvals("org-1", MANAGER)] == [wr_id]

    def test_queue_scoped_to_organization(self, submitted_request, workflow):
        submitted_request(organization_id="org-2")

        assert workflow.get_pending_approvals("org-1", SUPERVISOR) == []
        assert len(workflow.get_pending_approvals("org-2", SUPERVISOR)) == 1

    def test_finance_step_queued_after_reviewers(self, submitted_request, workflow):
        wr_id = submitted_request(
            priority=Priority.MEDIUM, estimated_total_cost=Decimal("25000"),
        ).work_request.id

        workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)

        queued = workflow.get_pending_approvals("org-1", FINANCE)
        assert [c.work_request_id for c in queued] == [wr_id]


class TestChainQueries:
    def test_missing_chain_reported(self, lifecycle, workflow, command_factory):
        draft = lifecycle.create_draft(command_factory())

        result = workflow.get_approval_chain(draft.id)

        assert isinstance(result.error, ApprovalChainNotFoundError)

    def test_cancel_during_review_freezes_chain(self, submitted_request, workflow, lifecycle):
        wr_id = submitted_request().work_request.id

        result = lifecycle.cancel(wr_id, "requestor-1", "no longer needed")

        assert result.is_ok
        chain = workflow.get_approval_chain(wr_id).value
        assert chain.is_frozen
        assert chain.steps[0].status == ApprovalStepStatus.MOOT
        assert workflow.get_pending_approvals("org-1", SUPERVISOR) == []


# =========================================================================
# Status write after a committed decision
# =========================================================================


class DecisionOutageStore(SqlAlchemyVersionedStore):
    """Status writes to APPROVED / REJECTED fail ``failures`` times."""

    def __init__(self, session_factory, failures):
        super().__init__(session_factory)
        self.failures = failures
        self.failed_writes = 0

    def compare_and_swap_work_request(self, work_request_id, expected_version, patch, history=None):
        decided = patch.get("status") in (WorkRequestStatus.APPROVED, WorkRequestStatus.REJECTED)
        if decided and self.failed_writes < self.failures:
            self.failed_writes += 1
            raise StorageUnavailable("compare_and_swap_work_request", "connection reset")
        return super().compare_and_swap_work_request(
            work_request_id, expected_version, patch, history=history,
        )


class TestStatusAdvanceAfterDecision:
    def build_workflow(self, session_factory, policy, clock, effects, failures):
        store = DecisionOutageStore(session_factory, failures)
        workflow = ApprovalWorkflowEngine(
            store, policy, clock=clock, effects=effects,
            advance_max_attempts=3, advance_backoff_seconds=0,
        )
        return store, workflow

    def test_transient_outage_is_retried(
        self, submitted_request, session_factory, policy, clock, effects, lifecycle,
    ):
        wr_id = submitted_request().work_request.id
        store, workflow = self.build_workflow(session_factory, policy, clock, effects, failures=2)

        result = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.REJECT, "duplicate")

        assert result.is_ok
        assert store.failed_writes == 2
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.REJECTED
        assert store.list_reconciliation_records() == []

    def test_exhausted_reject_is_flagged_for_reconciliation(
        self, submitted_request, session_factory, policy, clock, effects, lifecycle, dispatcher,
    ):
        wr_id = submitted_request().work_request.id
        store, workflow = self.build_workflow(session_factory, policy, clock, effects, failures=99)

        result = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.REJECT, "duplicate")

        assert isinstance(result.error, StatusAdvanceError)
        assert result.error.requires_reconciliation
        assert result.error.target_status == WorkRequestStatus.REJECTED.value
        assert isinstance(result.error.cause, StorageUnavailable)
        assert store.failed_writes == 3

        records = store.list_reconciliation_records()
        assert [(r.work_request_id, r.operation) for r in records] == [
            (wr_id, "advance_after_decision"),
        ]
        flagged = dispatcher.of_type(NotificationEventType.RECONCILIATION_REQUIRED)
        assert [e[1] for e in flagged] == [wr_id]
        # The decision itself stays recorded.
        assert dispatcher.of_type(NotificationEventType.APPROVAL_DECISION_RECORDED)
        assert status_of(lifecycle, wr_id) == WorkRequestStatus.UNDER_REVIEW

    def test_exhausted_final_approval_is_flagged_for_reconciliation(
        self, submitted_request, session_factory, policy, clock, effects,
    ):
        wr_id = submitted_request().work_request.id
        store, workflow = self.build_workflow(session_factory, policy, clock, effects, failures=99)

        result = workflow.record_decision(wr_id, SUPERVISOR, ApprovalDecision.APPROVE)

        assert isinstance(result.error, StatusAdvanceError)
        assert result.error.target_status == WorkRequestStatus.APPROVED.value
        assert len(store.list_reconciliation_records()) == 1
