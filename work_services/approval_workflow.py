"""
work_services.approval_workflow -- Approval chain orchestration.

Responsibility:
    Create the approval chain for a submitted work request, apply approver
    decisions one step at a time, move the work request to its resulting
    status, and answer chain and approval-queue queries.

Architecture position:
    Services layer.  Thin coordinator: chain construction, step resolution,
    ownership checks and outcome computation are delegated to the pure
    engines in ``work_engines``; persistence goes through the injected
    ``VersionedEntityStore``.

Invariants enforced:
    - A chain is created only for a SUBMITTED request, in one store call,
      under the request's current submission number.  If the status
      compare-and-swap to UNDER_REVIEW does not land, the chain is removed
      again (best effort) and a WorkflowInitError is returned.
    - Decisions apply only to the current pending step of the latest chain
      of an UNDER_REVIEW request.  The step status compare-and-swap makes
      each step accept at most one terminal decision.
    - Rejection moots every other pending step and freezes the chain.
    - Delegation compares the owner it read, so concurrent delegations of
      one step land at most once.
    - Once a decision has committed, the status it implies is written by a
      retried step.  If that step is exhausted the request is flagged with
      a reconciliation record and StatusAdvanceError is returned.

Failure modes (returned in ``Result.error``):
    - WorkflowInitError from ``initialize_workflow`` (cause attached).
    - StaleApprovalError, UnauthorizedApproverError, InvalidDelegationError,
      ApprovalChainNotFoundError from ``record_decision``.
    - StatusAdvanceError (``requires_reconciliation``) when a committed
      decision could not move the work request.
    - WorkRequestNotFoundError / WorkRequestDeletedError for bad ids.
    - StorageUnavailable when the store cannot be reached.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID, uuid4

from work_engines.approval import (
    DEFAULT_REJECTION_REASON,
    DELEGATED_STATUS,
    authorize,
    evaluate_decision,
    reject_repeated_decision,
    resolve_current_step,
    validate_delegation,
)
from work_engines.chain_builder import build as build_approval_chain
from work_engines.state_machine import build_transition_patch, validate_transition
from work_kernel.domain.approval import (
    ApprovalChain,
    ApprovalDecision,
    ApprovalDecisionRecord,
    ApprovalStep,
    ApprovalStepStatus,
    ChainPolicy,
    DecisionOutcome,
    DelegationRecord,
)
from work_kernel.domain.clock import Clock, SystemClock
from work_kernel.domain.events import NotificationEventType
from work_kernel.domain.results import Result, StepConflict, VersionConflict
from work_kernel.domain.work_request import (
    StatusHistoryEntry,
    TransitionContext,
    Versioned,
    WorkRequest,
    WorkRequestStatus,
)
from work_kernel.exceptions import (
    ApprovalChainNotFoundError,
    InvalidTransitionError,
    OptimisticLockError,
    StaleApprovalError,
    StatusAdvanceError,
    WorkflowInitError,
    WorkKernelError,
    WorkRequestDeletedError,
    WorkRequestNotFoundError,
)
from work_kernel.logging_config import LogContext, get_logger
from work_kernel.store.protocol import VersionedEntityStore
from work_services.compensation import CompensationStep
from work_services.notifications import OutboundEffects

logger = get_logger("services.approval_workflow")

SYSTEM_ACTOR = "system"

ADVANCE_AFTER_DECISION_STEP = "advance_after_decision"


class ApprovalWorkflowEngine:
    """
    Drives a work request through its approval chain.

    Contract:
        Public operations return ``Result`` values carrying either the
        outcome or a typed ``WorkKernelError``; they do not raise kernel
        errors at the caller.

    Non-goals:
        - Step timeouts are recorded (``due_at``) but not enforced here;
          escalation of overdue steps is an external scheduler's job.
    """

    def __init__(
        self,
        store: VersionedEntityStore,
        policy: ChainPolicy,
        clock: Clock | None = None,
        effects: OutboundEffects | None = None,
        advance_max_attempts: int = 3,
        advance_backoff_seconds: float = 0.05,
    ):
        self._store = store
        self._policy = policy
        self._clock = clock or SystemClock()
        self._effects = effects or OutboundEffects()
        self._advance_max_attempts = advance_max_attempts
        self._advance_backoff_seconds = advance_backoff_seconds

    @property
    def policy(self) -> ChainPolicy:
        return self._policy

    # =====================================================================
    # Initialization
    # =====================================================================

    def initialize_workflow(
        self,
        work_request_id: UUID,
        actor_id: str | None = None,
    ) -> Result[ApprovalChain]:
        """Build and persist the chain for a SUBMITTED request, then move it
        to UNDER_REVIEW.

        Returns:
            Result carrying the new ApprovalChain, or a WorkflowInitError
            whose ``cause`` is the underlying failure.
        """
        with LogContext.bind(
            work_request_id=work_request_id, operation="initialize_workflow",
        ):
            try:
                chain = self._initialize(work_request_id, actor_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "approval_workflow_init_failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                return Result.fail(
                    WorkflowInitError(str(work_request_id), str(exc), cause=exc)
                )
            return Result.ok(chain)

    def _initialize(self, work_request_id: UUID, actor_id: str | None) -> ApprovalChain:
        versioned = self._read_live(work_request_id)
        wr = versioned.entity
        if wr.status != WorkRequestStatus.SUBMITTED:
            raise InvalidTransitionError(
                wr.status.value,
                WorkRequestStatus.UNDER_REVIEW.value,
                "approval workflow starts only from submitted",
            )

        plan = build_approval_chain(work_request=wr, policy=self._policy)
        now = self._clock.now()
        chain = self._store.create_chain(
            wr.id, wr.organization_id, wr.submission_count, plan, now,
        )

        try:
            ctx = TransitionContext(user_id=actor_id or wr.updated_by or SYSTEM_ACTOR)
            self._write_status(versioned, WorkRequestStatus.UNDER_REVIEW, ctx)
        except Exception:
            self._discard_chain(chain)
            raise

        logger.info(
            "approval_workflow_initialized",
            extra={
                "chain_id": str(chain.chain_id),
                "submission_number": chain.submission_number,
                "step_count": len(chain.steps),
                "approval_level": plan.approval_level.value,
                "fingerprint": chain.fingerprint,
            },
        )
        if chain.current_step is not None:
            self._notify_step_activated(wr.id, chain.current_step)
        return chain

    def _discard_chain(self, chain: ApprovalChain) -> None:
        try:
            self._store.delete_chain(chain.chain_id)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "approval_chain_cleanup_failed",
                extra={"chain_id": str(chain.chain_id), "error": str(e)},
            )

    # =====================================================================
    # Decisions
    # =====================================================================

    def record_decision(
        self,
        work_request_id: UUID,
        approver_id: str,
        decision: ApprovalDecision | str,
        comments: str = "",
        delegated_to: str | None = None,
        step_id: UUID | None = None,
    ) -> Result[DecisionOutcome]:
        """Apply one approver decision to the current step.

        Args:
            work_request_id: Request under review.
            approver_id: Acting user; must own the current step.
            decision: approve, reject or delegate.
            comments: Free text; used as the rejection reason.
            delegated_to: Delegate for ``decision == delegate``.
            step_id: When given, the decision is stale unless this is the
                current step.
        """
        decision = ApprovalDecision(decision)
        with LogContext.bind(
            work_request_id=work_request_id,
            actor_id=approver_id,
            operation="record_decision",
        ):
            try:
                outcome = self._record(
                    work_request_id, approver_id, decision,
                    comments or "", delegated_to, step_id,
                )
            except WorkKernelError as exc:
                logger.info(
                    "approval_decision_refused",
                    extra={
                        "decision": decision.value,
                        "error_code": exc.code,
                        "error": str(exc),
                    },
                )
                return Result.fail(exc)
            return Result.ok(outcome)

    def _record(
        self,
        work_request_id: UUID,
        approver_id: str,
        decision: ApprovalDecision,
        comments: str,
        delegated_to: str | None,
        step_id: UUID | None,
    ) -> DecisionOutcome:
        versioned = self._read_live(work_request_id)
        wr = versioned.entity
        chain = self._store.read_latest_chain(work_request_id)
        if chain is None:
            raise ApprovalChainNotFoundError(str(work_request_id))
        if chain.submission_number != wr.submission_count:
            raise StaleApprovalError(
                str(work_request_id),
                str(step_id) if step_id is not None else None,
                "superseded",
            )

        step = resolve_current_step(chain, wr.status, step_id)
        reject_repeated_decision(chain, step, approver_id, step_id)
        authorize(step, approver_id, wr.id)
        now = self._clock.now()

        record = ApprovalDecisionRecord(
            decision_id=uuid4(),
            step_id=step.step_id,
            work_request_id=wr.id,
            actor_id=approver_id,
            decision=decision,
            comments=comments,
            decided_at=now,
        )

        if decision == ApprovalDecision.DELEGATE:
            return self._delegate(wr, chain, step, approver_id, delegated_to, record)

        effect = evaluate_decision(chain, step, decision)
        cas = self._store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {
                "status": effect.step_status,
                "decision": decision,
                "comments": comments,
                "decided_at": now,
            },
            decision=record,
            expected_owner=step.owner_id,
        )
        if isinstance(cas, StepConflict):
            raise self._step_conflict(wr.id, cas)

        logger.info(
            "approval_decision_recorded",
            extra={
                "step_id": str(step.step_id),
                "position": step.position,
                "decision": decision.value,
                "resulting_status": effect.work_request_status.value,
            },
        )

        moot_ids: tuple[UUID, ...] = ()
        if decision == ApprovalDecision.REJECT:
            moot_ids = self._store.freeze_chain(chain.chain_id)
        elif effect.next_step is not None:
            self._activate(wr.id, effect.next_step)

        self._effects.notify(
            NotificationEventType.APPROVAL_DECISION_RECORDED,
            wr.id,
            {
                "step_id": str(step.step_id),
                "decision": decision.value,
                "actor_id": approver_id,
                "comments": comments,
            },
        )

        if effect.changes_work_request:
            reason = (comments.strip() or DEFAULT_REJECTION_REASON) if (
                decision == ApprovalDecision.REJECT
            ) else None
            self._advance(
                wr.id,
                effect.work_request_status,
                TransitionContext(user_id=approver_id, reason=reason),
            )

        refreshed = self._store.read_latest_chain(wr.id)
        return DecisionOutcome(
            work_request_id=wr.id,
            step_id=step.step_id,
            decision=decision,
            work_request_status=effect.work_request_status,
            next_step=refreshed.step(effect.next_step.step_id) if (
                refreshed is not None and effect.next_step is not None
            ) else None,
            moot_step_ids=moot_ids,
            chain=refreshed,
        )

    def _delegate(
        self,
        wr: WorkRequest,
        chain: ApprovalChain,
        step: ApprovalStep,
        approver_id: str,
        delegated_to: str | None,
        record: ApprovalDecisionRecord,
    ) -> DecisionOutcome:
        delegate = validate_delegation(step, approver_id, delegated_to, wr.id)
        delegation = DelegationRecord(
            delegation_id=uuid4(),
            step_id=step.step_id,
            delegated_by=approver_id,
            delegated_to=delegate,
            delegated_at=record.decided_at,
            comments=record.comments,
        )
        cas = self._store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {"delegated_to": delegate, "delegated_from": step.owner_id},
            decision=record,
            delegation=delegation,
            expected_owner=step.owner_id,
        )
        if isinstance(cas, StepConflict):
            raise self._step_conflict(wr.id, cas)

        logger.info(
            "approval_step_delegated",
            extra={
                "step_id": str(step.step_id),
                "delegated_by": approver_id,
                "delegated_to": delegate,
            },
        )
        self._effects.notify(
            NotificationEventType.APPROVAL_DELEGATED,
            wr.id,
            {
                "step_id": str(step.step_id),
                "delegated_by": approver_id,
                "delegated_to": delegate,
            },
        )

        refreshed = self._store.read_latest_chain(wr.id)
        return DecisionOutcome(
            work_request_id=wr.id,
            step_id=step.step_id,
            decision=ApprovalDecision.DELEGATE,
            work_request_status=WorkRequestStatus.UNDER_REVIEW,
            next_step=refreshed.step(step.step_id) if refreshed is not None else None,
            chain=refreshed,
        )

    def _activate(self, work_request_id: UUID, step: ApprovalStep) -> None:
        due_at = self._clock.now() + timedelta(hours=step.timeout_hours)
        cas = self._store.compare_and_swap_step(
            step.step_id, ApprovalStepStatus.PENDING, {"due_at": due_at},
        )
        if isinstance(cas, StepConflict):
            logger.warning(
                "approval_step_activation_skipped",
                extra={"step_id": str(step.step_id), "actual_status": cas.actual_status},
            )
            return
        self._notify_step_activated(work_request_id, step)

    def _notify_step_activated(self, work_request_id: UUID, step: ApprovalStep) -> None:
        self._effects.notify(
            NotificationEventType.APPROVAL_STEP_ACTIVATED,
            work_request_id,
            {
                "step_id": str(step.step_id),
                "position": step.position,
                "approver_id": step.owner_id,
                "approval_level": step.approval_level.value,
            },
        )

    def _advance(
        self,
        work_request_id: UUID,
        target: WorkRequestStatus,
        ctx: TransitionContext,
    ) -> None:
        """Move the request to ``target`` after its decision has committed.

        The decision is already durable, so version conflicts and storage
        outages are retried against a fresh read.  A request that left
        review in the meantime raises InvalidTransitionError unchanged.
        Exhausted retries leave a reconciliation record and raise
        StatusAdvanceError.
        """

        def write() -> None:
            versioned = self._read_live(work_request_id)
            if versioned.entity.status == target:
                return
            self._write_status(versioned, target, ctx)

        outcome = CompensationStep(
            ADVANCE_AFTER_DECISION_STEP,
            write,
            max_attempts=self._advance_max_attempts,
            backoff_seconds=self._advance_backoff_seconds,
        ).run(work_request_id)
        if outcome.succeeded:
            return

        cause = outcome.error.cause
        if isinstance(cause, InvalidTransitionError):
            raise cause

        failure_reason = f"decision committed, status not advanced to {target.value}: {cause}"
        logger.error(
            "work_request_status_advance_failed",
            extra={"target": target.value, "attempts": outcome.attempts, "error": str(cause)},
        )
        try:
            self._store.record_reconciliation(
                work_request_id, ADVANCE_AFTER_DECISION_STEP, failure_reason, self._clock.now(),
            )
        except WorkKernelError as e:
            logger.error(
                "reconciliation_record_failed",
                extra={"error": str(e), "failure_reason": failure_reason},
            )
        self._effects.notify(
            NotificationEventType.RECONCILIATION_REQUIRED,
            work_request_id,
            {"operation": ADVANCE_AFTER_DECISION_STEP, "failure_reason": failure_reason},
        )
        raise StatusAdvanceError(str(work_request_id), target.value, cause=cause)

    @staticmethod
    def _step_conflict(work_request_id: UUID, cas: StepConflict) -> StaleApprovalError:
        status = cas.actual_status or "unknown"
        if status == ApprovalStepStatus.PENDING.value:
            status = DELEGATED_STATUS
        return StaleApprovalError(str(work_request_id), str(cas.step_id), status)

    def _write_status(
        self,
        versioned: Versioned[WorkRequest],
        target: WorkRequestStatus,
        ctx: TransitionContext,
    ) -> int:
        wr = versioned.entity
        validate_transition(wr.status, target, ctx)
        now = self._clock.now()
        cas = self._store.compare_and_swap_work_request(
            wr.id,
            versioned.version,
            build_transition_patch(wr, target, ctx, now),
            history=StatusHistoryEntry(
                work_request_id=wr.id,
                from_status=wr.status,
                to_status=target,
                changed_by=ctx.user_id,
                changed_at=now,
                version=versioned.version + 1,
                reason=ctx.reason,
            ),
        )
        if isinstance(cas, VersionConflict):
            raise OptimisticLockError(
                "WorkRequest", str(wr.id), cas.expected_version, cas.actual_version,
            )
        self._effects.notify(
            NotificationEventType.STATUS_CHANGED,
            wr.id,
            {
                "from_status": wr.status.value,
                "to_status": target.value,
                "actor_id": ctx.user_id,
                "reason": ctx.reason,
            },
        )
        self._effects.invalidate(wr.id)
        return cas.new_version

    # =====================================================================
    # Queries
    # =====================================================================

    def get_approval_chain(self, work_request_id: UUID) -> Result[ApprovalChain]:
        """Latest chain of the request, read-only."""
        try:
            if self._store.read_work_request(work_request_id) is None:
                raise WorkRequestNotFoundError(str(work_request_id))
            chain = self._store.read_latest_chain(work_request_id)
            if chain is None:
                raise ApprovalChainNotFoundError(str(work_request_id))
        except WorkKernelError as exc:
            return Result.fail(exc)
        return Result.ok(chain)

    def get_pending_approvals(self, organization_id: str, approver_id: str) -> list[ApprovalChain]:
        """Chains whose current step is owned by ``approver_id``.

        Waiting steps further down a chain do not count.
        """
        chains = self._store.list_pending_chains(organization_id, approver_id)
        return [
            c for c in chains
            if c.current_step is not None and c.current_step.is_owned_by(approver_id)
        ]

    def close_workflow(self, work_request_id: UUID) -> tuple[UUID, ...]:
        """Freeze the latest chain of a request that left review early.

        Returns the ids of steps that were mooted.
        """
        chain = self._store.read_latest_chain(work_request_id)
        if chain is None or chain.is_frozen:
            return ()
        moot_ids = self._store.freeze_chain(chain.chain_id)
        logger.info(
            "approval_workflow_closed",
            extra={
                "work_request_id": str(work_request_id),
                "chain_id": str(chain.chain_id),
                "moot_steps": len(moot_ids),
            },
        )
        return moot_ids

    # =====================================================================
    # Helpers
    # =====================================================================

    def _read_live(self, work_request_id: UUID) -> Versioned[WorkRequest]:
        versioned = self._store.read_work_request(work_request_id)
        if versioned is None:
            raise WorkRequestNotFoundError(str(work_request_id))
        if versioned.entity.is_deleted:
            raise WorkRequestDeletedError(str(work_request_id))
        return versioned
