"""
work_engines.state_machine -- Work request status transition rules.

Responsibility:
    Decide whether a (current, target) status pair is a legal edge, check
    the per-edge preconditions (a reason for CANCELLED / REJECTED), and
    compute the column patch that a legal transition writes.

Architecture position:
    Engines -- pure decision layer, zero I/O.
    May only import work_kernel.domain types and work_kernel.exceptions.

Invariants enforced:
    - WR-1: ``WORK_REQUEST_TRANSITIONS`` is the only source of legal edges.
      The SUBMITTED -> DRAFT rollback edge is legal only when the context
      is marked as a compensation.
    - WR-3: entering CANCELLED or REJECTED requires a non-blank reason.
    - Purity: no clock access.  ``build_transition_patch`` takes ``now``.

Failure modes:
    - ``validate_transition`` raises InvalidTransitionError or
      MissingTransitionReasonError.
    - ``transition`` returns the same errors inside a ``Result``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from work_kernel.domain.results import Result
from work_kernel.domain.work_request import (
    COMPENSATION_TRANSITIONS,
    REASON_REQUIRED_STATUSES,
    WORK_REQUEST_TRANSITIONS,
    TransitionContext,
    WorkRequest,
    WorkRequestStatus,
)
from work_kernel.exceptions import (
    InvalidTransitionError,
    MissingTransitionReasonError,
    TransitionError,
)

# Timestamp column stamped when a request enters the status.
STATUS_TIMESTAMP_FIELDS: dict[WorkRequestStatus, str] = {
    WorkRequestStatus.SUBMITTED: "submitted_at",
    WorkRequestStatus.UNDER_REVIEW: "review_started_at",
    WorkRequestStatus.APPROVED: "approved_at",
    WorkRequestStatus.COMPLETED: "completed_at",
}


def legal_targets(
    current: WorkRequestStatus,
    *,
    compensation: bool = False,
) -> frozenset[WorkRequestStatus]:
    """Statuses reachable from ``current`` in one step."""
    targets = WORK_REQUEST_TRANSITIONS.get(current, frozenset())
    if compensation:
        targets = targets | COMPENSATION_TRANSITIONS.get(current, frozenset())
    return targets


def can_transition(
    current: WorkRequestStatus,
    target: WorkRequestStatus,
    *,
    compensation: bool = False,
) -> bool:
    return target in legal_targets(current, compensation=compensation)


def validate_transition(
    current: WorkRequestStatus,
    target: WorkRequestStatus,
    ctx: TransitionContext,
) -> None:
    """Raise if ``current -> target`` is not allowed under ``ctx``."""
    if not can_transition(current, target, compensation=ctx.compensation):
        raise InvalidTransitionError(current.value, target.value)

    if target in REASON_REQUIRED_STATUSES:
        if ctx.reason is None or not ctx.reason.strip():
            raise MissingTransitionReasonError(current.value, target.value)


def transition(
    current: WorkRequestStatus,
    target: WorkRequestStatus,
    ctx: TransitionContext,
) -> Result[WorkRequestStatus]:
    """Validate the edge and return the new status, or the typed error."""
    try:
        validate_transition(current, target, ctx)
    except TransitionError as exc:
        return Result.fail(exc)
    return Result.ok(target)


def build_transition_patch(
    work_request: WorkRequest,
    target: WorkRequestStatus,
    ctx: TransitionContext,
    now: datetime,
) -> dict[str, Any]:
    """Columns written by a validated transition of ``work_request`` to ``target``.

    Entering SUBMITTED also bumps ``submission_count``; the new count is the
    submission number the approval chain is created under.
    """
    patch: dict[str, Any] = {
        "status": target,
        "status_reason": ctx.reason,
        "updated_by": ctx.user_id,
        "updated_at": now,
    }
    timestamp_field = STATUS_TIMESTAMP_FIELDS.get(target)
    if timestamp_field is not None:
        patch[timestamp_field] = now
    if target == WorkRequestStatus.SUBMITTED:
        patch["submission_count"] = work_request.submission_count + 1
    return patch
