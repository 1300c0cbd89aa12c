"""
work_engines.approval -- Pure evaluation of approval decisions.

Responsibility:
    Given a chain snapshot and the work request's status, resolve the step
    a decision targets, check that the actor owns it, and compute what the
    decision does: the step's new status, the next current step, and the
    work request's resulting status.  Also estimates approval time.

Architecture position:
    Engines -- pure decision layer, zero I/O.
    May only import work_kernel.domain types and work_kernel.exceptions.

Invariants enforced:
    - AP-1: only the current pending step accepts a decision; a decision
      naming any other step is stale.
    - AP-2: the current step is the lowest-position pending step.
    - Ownership: the owner of a step is its active delegate if one exists,
      otherwise its assigned approver.

Failure modes:
    - StaleApprovalError when the request is not UNDER_REVIEW, the chain is
      frozen or resolved, or ``step_id`` is not the current step.  Also when
      the actor repeats a decision already recorded on ``step_id``.
    - UnauthorizedApproverError when the actor does not own the step.
    - InvalidDelegationError on self-delegation or a missing target.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from work_kernel.domain.approval import (
    ApprovalChain,
    ApprovalDecision,
    ApprovalStep,
    ApprovalStepStatus,
)
from work_kernel.domain.work_request import WorkRequestStatus
from work_kernel.exceptions import (
    InvalidDelegationError,
    StaleApprovalError,
    UnauthorizedApproverError,
)

DEFAULT_REJECTION_REASON = "Rejected by approver"

# Reported as the current status when a pending step changed owner.
DELEGATED_STATUS = "delegated"


@dataclass(frozen=True)
class DecisionEffect:
    """What a decision on ``step`` does, before anything is written."""

    step: ApprovalStep
    step_status: ApprovalStepStatus
    work_request_status: WorkRequestStatus
    next_step: ApprovalStep | None
    moot_step_ids: tuple[UUID, ...] = ()

    @property
    def changes_work_request(self) -> bool:
        return self.work_request_status != WorkRequestStatus.UNDER_REVIEW


def resolve_current_step(
    chain: ApprovalChain,
    work_request_status: WorkRequestStatus,
    step_id: UUID | None = None,
) -> ApprovalStep:
    """Return the step a decision applies to, or raise StaleApprovalError."""
    current = chain.current_step
    if work_request_status != WorkRequestStatus.UNDER_REVIEW:
        raise _stale(chain, step_id, work_request_status.value)
    if current is None:
        raise _stale(chain, step_id, "resolved")
    if step_id is not None and step_id != current.step_id:
        raise _stale(chain, step_id, "not_current")
    return current


def _stale(
    chain: ApprovalChain,
    step_id: UUID | None,
    fallback_status: str,
) -> StaleApprovalError:
    target = chain.step(step_id) if step_id is not None else None
    status = target.status.value if target is not None else fallback_status
    return StaleApprovalError(
        str(chain.work_request_id),
        str(step_id) if step_id is not None else None,
        status,
    )


def reject_repeated_decision(
    chain: ApprovalChain,
    step: ApprovalStep,
    actor_id: str,
    step_id: UUID | None,
) -> None:
    """Raise StaleApprovalError when ``actor_id`` already decided ``step_id``.

    A delegation leaves the step pending under a new owner, so a repeated
    delegate call from the former owner lands here before ``authorize``.
    """
    if step_id is None or step.is_owned_by(actor_id):
        return
    if any(
        d.step_id == step.step_id and d.actor_id == actor_id
        for d in chain.decisions
    ):
        raise StaleApprovalError(
            str(chain.work_request_id), str(step_id), DELEGATED_STATUS,
        )


def authorize(step: ApprovalStep, actor_id: str, work_request_id: UUID) -> None:
    if not step.is_owned_by(actor_id):
        raise UnauthorizedApproverError(
            str(work_request_id), actor_id, step.owner_id,
        )


def validate_delegation(
    step: ApprovalStep,
    actor_id: str,
    delegated_to: str | None,
    work_request_id: UUID,
) -> str:
    """Return the delegate id after checking it is usable."""
    if delegated_to is None or not delegated_to.strip():
        raise InvalidDelegationError(str(work_request_id), "a delegation target is required")
    delegate = delegated_to.strip()
    if delegate == actor_id or delegate == step.owner_id:
        raise InvalidDelegationError(str(work_request_id), "cannot delegate to yourself")
    return delegate


def next_pending_after(chain: ApprovalChain, step: ApprovalStep) -> ApprovalStep | None:
    """Lowest-position pending step other than ``step``."""
    waiting = [
        s for s in chain.steps
        if s.is_pending and s.step_id != step.step_id
    ]
    if not waiting:
        return None
    return min(waiting, key=lambda s: s.position)


def evaluate_decision(
    chain: ApprovalChain,
    step: ApprovalStep,
    decision: ApprovalDecision,
) -> DecisionEffect:
    """Compute the effect of ``decision`` on the current ``step``.

    approve  -> step approved; next pending step becomes current, or the
                request is approved when none is left.
    reject   -> step rejected; every other pending step is moot; the
                request is rejected.
    delegate -> step stays pending at the same position.
    """
    if decision == ApprovalDecision.APPROVE:
        nxt = next_pending_after(chain, step)
        return DecisionEffect(
            step=step,
            step_status=ApprovalStepStatus.APPROVED,
            work_request_status=(
                WorkRequestStatus.UNDER_REVIEW if nxt is not None
                else WorkRequestStatus.APPROVED
            ),
            next_step=nxt,
        )

    if decision == ApprovalDecision.REJECT:
        moot = tuple(
            s.step_id for s in sorted(chain.steps, key=lambda s: s.position)
            if s.is_pending and s.step_id != step.step_id
        )
        return DecisionEffect(
            step=step,
            step_status=ApprovalStepStatus.REJECTED,
            work_request_status=WorkRequestStatus.REJECTED,
            next_step=None,
            moot_step_ids=moot,
        )

    return DecisionEffect(
        step=step,
        step_status=ApprovalStepStatus.PENDING,
        work_request_status=WorkRequestStatus.UNDER_REVIEW,
        next_step=step,
    )


def estimate_approval_hours(steps, default_hours: int) -> int:
    """Sum of step timeouts; ``default_hours`` when there are no steps."""
    total = sum(s.timeout_hours for s in steps)
    return total if total > 0 else default_hours
