"""
work_services.lifecycle -- Work request lifecycle operations.

Responsibility:
    Create and edit drafts, submit (with approval workflow initialization),
    duplicate, move requests through their status lifecycle singly or in
    bulk, and soft-delete them.  Owns the compensation that undoes a
    submission whose approval workflow could not be initialized.

Architecture position:
    Services layer.  Coordinates the state machine engine, the injected
    ``VersionedEntityStore``, the ``ApprovalWorkflowEngine`` and the
    fire-and-forget outbound effects.

Invariants enforced:
    - WR-1 / WR-3 via ``work_engines.state_machine`` before every status
      write.
    - WR-2: every write is a compare-and-swap on the version read at the
      start of the operation; a conflict becomes OptimisticLockError and
      nothing is merged.
    - Submit is all-or-compensated: if the approval workflow cannot be
      initialized, the request is returned to DRAFT by a logged, retried
      ``CompensationStep``.  When that also fails, a reconciliation record
      is written and the error says so.
    - SUBMITTED and UNDER_REVIEW are entered only through ``submit``.
    - Rows are never physically deleted.

Failure modes:
    Every operation returns ``Result``; bulk operations return
    ``BulkResult`` with one failure entry per failed id.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from uuid import UUID, uuid4

from work_engines.approval import estimate_approval_hours
from work_engines.state_machine import build_transition_patch, validate_transition
from work_kernel.domain.clock import Clock, SystemClock
from work_kernel.domain.events import NotificationEventType
from work_kernel.domain.results import (
    BulkFailure,
    BulkResult,
    Result,
    SubmitReceipt,
    VersionConflict,
)
from work_kernel.domain.work_request import (
    DELETABLE_STATUSES,
    EDITABLE_DRAFT_FIELDS,
    CreateWorkRequestCommand,
    ReconciliationRecord,
    StatusHistoryEntry,
    SubmitContext,
    TransitionContext,
    Versioned,
    WorkRequest,
    WorkRequestStatus,
)
from work_kernel.exceptions import (
    InvalidTransitionError,
    OptimisticLockError,
    WorkflowInitError,
    WorkKernelError,
    WorkRequestDeletedError,
    WorkRequestNotEditableError,
    WorkRequestNotFoundError,
)
from work_kernel.logging_config import LogContext, get_logger
from work_kernel.store.protocol import VersionedEntityStore
from work_services.approval_workflow import ApprovalWorkflowEngine
from work_services.compensation import CompensationStep
from work_services.notifications import OutboundEffects

logger = get_logger("services.lifecycle")

WORKFLOW_INIT_FAILURE_REASON = "Approval workflow initialization failed"
ROLLBACK_SUBMIT_STEP = "rollback_submit_to_draft"
DUPLICATE_TITLE_PREFIX = "Copy of "

# Entered only by submit() and the approval workflow.
_WORKFLOW_MANAGED_TARGETS = frozenset({
    WorkRequestStatus.SUBMITTED,
    WorkRequestStatus.UNDER_REVIEW,
})

# Copied by duplicate(); history, comments and attachments are not.
_DUPLICATED_FIELDS = (
    "organization_id",
    "description",
    "priority",
    "urgency",
    "impact_level",
    "work_type",
    "asset_id",
    "asset_type",
    "estimated_total_cost",
)


class WorkRequestLifecycleService:
    """
    Lifecycle operations on work requests.

    Contract:
        Public operations return ``Result`` / ``BulkResult`` values; typed
        kernel errors are carried, not raised.  The service holds no
        mutable state between calls, so one instance can serve concurrent
        callers.
    """

    def __init__(
        self,
        store: VersionedEntityStore,
        workflow: ApprovalWorkflowEngine,
        clock: Clock | None = None,
        effects: OutboundEffects | None = None,
        bulk_max_workers: int = 8,
        compensation_max_attempts: int = 3,
        compensation_backoff_seconds: float = 0.05,
    ):
        self._store = store
        self._workflow = workflow
        self._clock = clock or SystemClock()
        self._effects = effects or OutboundEffects()
        self._bulk_max_workers = bulk_max_workers
        self._compensation_max_attempts = compensation_max_attempts
        self._compensation_backoff_seconds = compensation_backoff_seconds

    # =====================================================================
    # Drafts
    # =====================================================================

    def create_draft(self, command: CreateWorkRequestCommand) -> WorkRequest:
        """Open a new DRAFT at version 1."""
        if not command.title or not command.title.strip():
            raise ValueError("title must be non-empty")

        now = self._clock.now()
        draft = WorkRequest(
            id=uuid4(),
            organization_id=command.organization_id,
            title=command.title.strip(),
            requested_by=command.requested_by,
            status=WorkRequestStatus.DRAFT,
            priority=command.priority,
            urgency=command.urgency,
            impact_level=command.impact_level,
            work_type=command.work_type,
            asset_id=command.asset_id,
            asset_type=command.asset_type,
            description=command.description,
            estimated_total_cost=command.estimated_total_cost,
            version=1,
            updated_by=command.requested_by,
            created_at=now,
            updated_at=now,
        )
        created = self._store.insert_work_request(draft).entity
        logger.info(
            "work_request_created",
            extra={
                "work_request_id": str(created.id),
                "organization_id": created.organization_id,
                "priority": created.priority.value,
            },
        )
        return created

    def update_draft(
        self,
        work_request_id: UUID,
        expected_version: int,
        changes: Mapping[str, Any],
        user_id: str,
    ) -> Result[WorkRequest]:
        """Edit classification and descriptive fields of a DRAFT.

        ``expected_version`` is the version the caller read; if the stored
        version moved on, the edit fails with OptimisticLockError.
        """
        unknown = set(changes) - EDITABLE_DRAFT_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")

        with LogContext.bind(
            work_request_id=work_request_id, actor_id=user_id, operation="update_draft",
        ):
            try:
                wr = self._read_live(work_request_id).entity
                if wr.status != WorkRequestStatus.DRAFT:
                    raise WorkRequestNotEditableError(
                        str(work_request_id), wr.status.value, "edit",
                    )
                if "title" in changes and not str(changes["title"] or "").strip():
                    raise ValueError("title must be non-empty")

                patch = dict(changes)
                patch["updated_by"] = user_id
                patch["updated_at"] = self._clock.now()
                self._cas(work_request_id, expected_version, patch)
            except WorkKernelError as exc:
                return Result.fail(exc)

            self._effects.invalidate(work_request_id)
            return self.get_work_request(work_request_id)

    # =====================================================================
    # Submit
    # =====================================================================

    def submit(self, work_request_id: UUID, ctx: SubmitContext) -> Result[SubmitReceipt]:
        """DRAFT -> SUBMITTED, then initialize the approval workflow.

        Returns:
            Result with a SubmitReceipt, or:
            - OptimisticLockError if the request changed since it was read;
            - InvalidTransitionError if it is not a DRAFT;
            - WorkflowInitError (``compensated`` / ``requires_reconciliation``
              set) if the workflow could not start.
        """
        with LogContext.bind(
            work_request_id=work_request_id,
            actor_id=ctx.user_id,
            organization_id=ctx.organization_id,
            operation="submit",
        ):
            try:
                versioned = self._read_live(work_request_id, ctx.organization_id)
                self._transition(
                    versioned,
                    WorkRequestStatus.SUBMITTED,
                    TransitionContext(user_id=ctx.user_id),
                )
            except WorkKernelError as exc:
                logger.info(
                    "work_request_submit_refused",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                return Result.fail(exc)

            init = self._workflow.initialize_workflow(work_request_id, actor_id=ctx.user_id)
            if not init.is_ok:
                return Result.fail(self._compensate_submit(work_request_id, init.error, ctx.user_id))

            chain = init.value
            try:
                submitted = self._read_live(work_request_id).entity
            except WorkKernelError as exc:
                return Result.fail(exc)

            hours = estimate_approval_hours(
                chain.steps, self._workflow.policy.default_estimated_approval_hours,
            )
            logger.info(
                "work_request_submitted",
                extra={
                    "chain_id": str(chain.chain_id),
                    "step_count": len(chain.steps),
                    "estimated_approval_hours": hours,
                },
            )
            self._effects.notify(
                NotificationEventType.WORK_REQUEST_SUBMITTED,
                work_request_id,
                {
                    "submitted_by": ctx.user_id,
                    "chain_id": str(chain.chain_id),
                    "estimated_approval_hours": hours,
                },
            )
            return Result.ok(SubmitReceipt(
                work_request=submitted,
                chain=chain,
                estimated_approval_hours=hours,
            ))

    def _compensate_submit(
        self,
        work_request_id: UUID,
        error: WorkflowInitError,
        user_id: str,
    ) -> WorkflowInitError:
        step = CompensationStep(
            ROLLBACK_SUBMIT_STEP,
            lambda: self._rollback_to_draft(work_request_id, user_id),
            max_attempts=self._compensation_max_attempts,
            backoff_seconds=self._compensation_backoff_seconds,
        )
        outcome = step.run(work_request_id)
        if outcome.succeeded:
            logger.warning(
                "work_request_submit_compensated",
                extra={"reason": error.reason, "attempts": outcome.attempts},
            )
            return error.with_compensation(compensated=True)

        failure_reason = f"{error.reason}; {outcome.error}"
        try:
            self._store.record_reconciliation(
                work_request_id, ROLLBACK_SUBMIT_STEP, failure_reason, self._clock.now(),
            )
        except WorkKernelError as e:
            logger.error(
                "reconciliation_record_failed",
                extra={"error": str(e), "failure_reason": failure_reason},
            )
        self._effects.notify(
            NotificationEventType.RECONCILIATION_REQUIRED,
            work_request_id,
            {"operation": ROLLBACK_SUBMIT_STEP, "failure_reason": failure_reason},
        )
        return error.with_compensation(compensated=False, requires_reconciliation=True)

    def _rollback_to_draft(self, work_request_id: UUID, user_id: str) -> None:
        """SUBMITTED -> DRAFT.  Idempotent: a request already in DRAFT is left alone.

        A request that reached a terminal status meanwhile (cancelled while
        its chain was being built) has nothing to roll back.
        """
        versioned = self._read_live(work_request_id)
        current = versioned.entity
        if current.status == WorkRequestStatus.DRAFT:
            return
        if current.is_terminal:
            logger.info(
                "work_request_rollback_skipped",
                extra={"status": current.status.value},
            )
            return
        self._transition(
            versioned,
            WorkRequestStatus.DRAFT,
            TransitionContext(
                user_id=user_id,
                reason=WORKFLOW_INIT_FAILURE_REASON,
                compensation=True,
            ),
            extra_patch={"submitted_at": None},
        )

    # =====================================================================
    # Duplicate
    # =====================================================================

    def duplicate(self, work_request_id: UUID, user_id: str) -> Result[WorkRequest]:
        """New DRAFT copying the source's classification; never its history."""
        try:
            source = self._read_live(work_request_id).entity
        except WorkKernelError as exc:
            return Result.fail(exc)

        copied = {name: getattr(source, name) for name in _DUPLICATED_FIELDS}
        command = CreateWorkRequestCommand(
            requested_by=user_id,
            title=f"{DUPLICATE_TITLE_PREFIX}{source.title}",
            **copied,
        )
        duplicate = self.create_draft(command)
        logger.info(
            "work_request_duplicated",
            extra={
                "source_id": str(source.id),
                "work_request_id": str(duplicate.id),
            },
        )
        return Result.ok(duplicate)

    # =====================================================================
    # Status updates
    # =====================================================================

    def update_status(
        self,
        work_request_id: UUID,
        target: WorkRequestStatus | str,
        user_id: str,
        reason: str | None = None,
    ) -> Result[WorkRequest]:
        """Single-item transition through the state machine and CAS."""
        target = WorkRequestStatus(target)
        with LogContext.bind(
            work_request_id=work_request_id, actor_id=user_id, operation="update_status",
        ):
            try:
                versioned = self._read_live(work_request_id)
                current = versioned.entity.status
                if target in _WORKFLOW_MANAGED_TARGETS:
                    raise InvalidTransitionError(
                        current.value, target.value, "entered only through submit",
                    )
                self._transition(
                    versioned, target, TransitionContext(user_id=user_id, reason=reason),
                )
                if current == WorkRequestStatus.UNDER_REVIEW:
                    self._workflow.close_workflow(work_request_id)
                updated = self._read_live(work_request_id).entity
            except WorkKernelError as exc:
                logger.info(
                    "work_request_status_update_refused",
                    extra={
                        "target": target.value,
                        "error_code": exc.code,
                        "error": str(exc),
                    },
                )
                return Result.fail(exc)
            return Result.ok(updated)

    def bulk_update_status(
        self,
        ids: Iterable[UUID],
        target: WorkRequestStatus | str,
        user_id: str,
        reason: str | None = None,
    ) -> BulkResult:
        """``update_status`` for each id in parallel; never fail-fast.

        ``processed_count`` counts ids that transitioned.
        """
        target = WorkRequestStatus(target)
        return self._bulk(
            ids,
            lambda wr_id: self.update_status(wr_id, target, user_id, reason),
            operation="bulk_update_status",
        )

    def cancel(self, work_request_id: UUID, user_id: str, reason: str) -> Result[WorkRequest]:
        return self.update_status(work_request_id, WorkRequestStatus.CANCELLED, user_id, reason)

    def resubmit(
        self,
        work_request_id: UUID,
        user_id: str,
        reason: str | None = None,
    ) -> Result[WorkRequest]:
        """REJECTED -> DRAFT.  The next submit builds a new chain."""
        return self.update_status(work_request_id, WorkRequestStatus.DRAFT, user_id, reason)

    def start_work(self, work_request_id: UUID, user_id: str) -> Result[WorkRequest]:
        return self.update_status(work_request_id, WorkRequestStatus.IN_PROGRESS, user_id)

    def complete_work(
        self,
        work_request_id: UUID,
        user_id: str,
        reason: str | None = None,
    ) -> Result[WorkRequest]:
        return self.update_status(work_request_id, WorkRequestStatus.COMPLETED, user_id, reason)

    # =====================================================================
    # Delete
    # =====================================================================

    def delete(
        self,
        work_request_id: UUID,
        user_id: str,
        reason: str | None = None,
    ) -> Result[WorkRequest]:
        """Soft delete.  Only DRAFT and CANCELLED requests can be deleted."""
        with LogContext.bind(
            work_request_id=work_request_id, actor_id=user_id, operation="delete",
        ):
            try:
                versioned = self._read_live(work_request_id)
                wr = versioned.entity
                if wr.status not in DELETABLE_STATUSES:
                    raise WorkRequestNotEditableError(
                        str(work_request_id), wr.status.value, "delete",
                    )
                now = self._clock.now()
                self._cas(work_request_id, versioned.version, {
                    "is_deleted": True,
                    "deleted_at": now,
                    "deleted_by": user_id,
                    "delete_reason": reason,
                    "updated_by": user_id,
                    "updated_at": now,
                })
                deleted = self._store.read_work_request(work_request_id).entity
            except WorkKernelError as exc:
                return Result.fail(exc)

            logger.info("work_request_deleted", extra={"reason": reason})
            self._effects.invalidate(work_request_id)
            self._effects.notify(
                NotificationEventType.WORK_REQUEST_DELETED,
                work_request_id,
                {"deleted_by": user_id, "reason": reason},
            )
            return Result.ok(deleted)

    def bulk_delete(
        self,
        ids: Iterable[UUID],
        user_id: str,
        reason: str | None = None,
    ) -> BulkResult:
        return self._bulk(
            ids,
            lambda wr_id: self.delete(wr_id, user_id, reason),
            operation="bulk_delete",
        )

    # =====================================================================
    # Queries
    # =====================================================================

    def get_work_request(self, work_request_id: UUID) -> Result[WorkRequest]:
        try:
            return Result.ok(self._read_live(work_request_id).entity)
        except WorkKernelError as exc:
            return Result.fail(exc)

    def get_status_history(self, work_request_id: UUID) -> list[StatusHistoryEntry]:
        return self._store.list_status_history(work_request_id)

    def pending_reconciliations(self) -> list[ReconciliationRecord]:
        """Failed compensations awaiting manual repair."""
        return self._store.list_reconciliation_records(unresolved_only=True)

    # =====================================================================
    # Helpers
    # =====================================================================

    def _read_live(
        self,
        work_request_id: UUID,
        organization_id: str | None = None,
    ) -> Versioned[WorkRequest]:
        versioned = self._store.read_work_request(work_request_id)
        if versioned is None:
            raise WorkRequestNotFoundError(str(work_request_id))
        if organization_id is not None and versioned.entity.organization_id != organization_id:
            raise WorkRequestNotFoundError(str(work_request_id))
        if versioned.entity.is_deleted:
            raise WorkRequestDeletedError(str(work_request_id))
        return versioned

    def _cas(self, work_request_id: UUID, expected_version: int, patch, history=None) -> int:
        cas = self._store.compare_and_swap_work_request(
            work_request_id, expected_version, patch, history=history,
        )
        if isinstance(cas, VersionConflict):
            raise OptimisticLockError(
                "WorkRequest", str(work_request_id), cas.expected_version, cas.actual_version,
            )
        return cas.new_version

    def _transition(
        self,
        versioned: Versioned[WorkRequest],
        target: WorkRequestStatus,
        ctx: TransitionContext,
        extra_patch: Mapping[str, Any] | None = None,
    ) -> int:
        wr = versioned.entity
        validate_transition(wr.status, target, ctx)
        now = self._clock.now()
        patch = build_transition_patch(wr, target, ctx, now)
        if extra_patch:
            patch.update(extra_patch)
        new_version = self._cas(
            wr.id,
            versioned.version,
            patch,
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
        logger.info(
            "work_request_status_changed",
            extra={
                "from_status": wr.status.value,
                "to_status": target.value,
                "version": new_version,
                "compensation": ctx.compensation,
            },
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
        return new_version

    def _bulk(
        self,
        ids: Iterable[UUID],
        operation_fn: Callable[[UUID], Result[WorkRequest]],
        operation: str,
    ) -> BulkResult:
        id_list = list(ids)
        if not id_list:
            return BulkResult()

        workers = max(1, min(self._bulk_max_workers, len(id_list)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(operation_fn, id_list))

        succeeded: list[UUID] = []
        failures: list[BulkFailure] = []
        for wr_id, result in zip(id_list, results):
            if result.is_ok:
                succeeded.append(wr_id)
            else:
                failures.append(BulkFailure(id=wr_id, error=result.error))

        logger.info(
            "bulk_operation_completed",
            extra={
                "bulk_operation": operation,
                "requested": len(id_list),
                "processed_count": len(succeeded),
                "failed_count": len(failures),
            },
        )
        return BulkResult(
            processed_count=len(succeeded),
            failures=tuple(failures),
            succeeded_ids=tuple(succeeded),
        )
