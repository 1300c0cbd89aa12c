"""
Typed exception hierarchy for the work request kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the lifecycle and approval services must react to failures by
kind: a stale version means "refetch and retry", an illegal transition means
"tell the user", a storage outage means "back off".  Parsing message strings
for that is fragile, so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A ``code`` class attribute (machine-readable, API-safe)
  3. Structured attributes (not just a message string)

At the service boundary these exceptions are not raised to the caller; they
are carried inside ``work_kernel.domain.results.Result`` values.  Engines and
the store raise them internally.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    WorkKernelError (base)
    |
    +-- WorkRequestError
    |   +-- WorkRequestNotFoundError
    |   +-- WorkRequestNotEditableError
    |   +-- WorkRequestDeletedError
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |       +-- MissingTransitionReasonError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- WorkflowError
    |   +-- WorkflowInitError
    |   +-- StatusAdvanceError
    |   +-- CompensationFailedError
    |
    +-- ApprovalError
    |   +-- StaleApprovalError
    |   +-- UnauthorizedApproverError
    |   +-- ApprovalChainNotFoundError
    |   +-- InvalidDelegationError
    |
    +-- StorageError
    |   +-- StorageUnavailable
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                        | When Raised
--------------|-----------------------------|---------------------------------------
WorkRequest   | WORK_REQUEST_NOT_FOUND      | Unknown id, or soft-deleted
              | WORK_REQUEST_NOT_EDITABLE   | Edit/delete outside allowed statuses
              | WORK_REQUEST_DELETED        | Mutation of a soft-deleted request
--------------|-----------------------------|---------------------------------------
Transition    | INVALID_TRANSITION          | Edge not in the legal-edge table
              | TRANSITION_REASON_REQUIRED  | CANCELLED/REJECTED without a reason
--------------|-----------------------------|---------------------------------------
Concurrency   | OPTIMISTIC_LOCK_CONFLICT    | Stale version on compare-and-swap
--------------|-----------------------------|---------------------------------------
Workflow      | WORKFLOW_INIT_FAILED        | Chain creation failed after submit
              | STATUS_ADVANCE_FAILED       | Decision committed, status write did not
              | COMPENSATION_FAILED         | Rollback to DRAFT could not complete
--------------|-----------------------------|---------------------------------------
Approval      | STALE_APPROVAL              | Step is no longer the current pending one
              | UNAUTHORIZED_APPROVER       | Actor does not own the current step
              | APPROVAL_CHAIN_NOT_FOUND    | No chain for the work request
              | INVALID_DELEGATION          | Missing or self-referencing delegate
--------------|-----------------------------|---------------------------------------
Storage       | STORAGE_UNAVAILABLE         | Transient infrastructure failure
--------------|-----------------------------|---------------------------------------
Immutability  | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of an append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CONCURRENCY ERRORS ARE RETRYABLE BY THE CALLER:

    result = lifecycle.submit(request_id, ctx)
    if isinstance(result.error, OptimisticLockError):
        # refetch, re-validate, retry -- never overwrite blindly
        ...

2. STALE APPROVALS ARE IDEMPOTENT REJECTIONS:

    StaleApprovalError on a double-click means the first click already
    landed.  Show the current chain; do not report a failure.

3. WORKFLOW INIT FAILURES CARRY THEIR COMPENSATION STATUS:

    err.compensated              -> request is back in DRAFT
    err.requires_reconciliation  -> request stuck in SUBMITTED, flagged
"""


class WorkKernelError(Exception):
    """
    Base exception for all work kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "WORK_KERNEL_ERROR"


# Work request exceptions


class WorkRequestError(WorkKernelError):
    """Base exception for work-request errors."""

    code: str = "WORK_REQUEST_ERROR"


class WorkRequestNotFoundError(WorkRequestError):
    """Work request with given ID was not found."""

    code: str = "WORK_REQUEST_NOT_FOUND"

    def __init__(self, work_request_id: str):
        self.work_request_id = work_request_id
        super().__init__(f"Work request not found: {work_request_id}")


class WorkRequestNotEditableError(WorkRequestError):
    """The requested change is not allowed in the request's current status."""

    code: str = "WORK_REQUEST_NOT_EDITABLE"

    def __init__(self, work_request_id: str, status: str, operation: str):
        self.work_request_id = work_request_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} work request {work_request_id} in status '{status}'"
        )


class WorkRequestDeletedError(WorkRequestError):
    """The work request has been soft-deleted."""

    code: str = "WORK_REQUEST_DELETED"

    def __init__(self, work_request_id: str):
        self.work_request_id = work_request_id
        super().__init__(f"Work request {work_request_id} has been deleted")


# Transition exceptions


class TransitionError(WorkKernelError):
    """Base exception for status transition errors."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """The requested (from, to) pair is not a legal edge."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Invalid status transition from '{from_status}' to '{to_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MissingTransitionReasonError(InvalidTransitionError):
    """CANCELLED and REJECTED transitions require a non-empty reason."""

    code: str = "TRANSITION_REASON_REQUIRED"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(from_status, to_status, "a non-empty reason is required")


# Concurrency exceptions


class ConcurrencyError(WorkKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Compare-and-swap rejected a write against a stale version."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


# Workflow exceptions


class WorkflowError(WorkKernelError):
    """Base exception for approval-workflow orchestration errors."""

    code: str = "WORKFLOW_ERROR"


class WorkflowInitError(WorkflowError):
    """
    Approval chain creation failed after the request was submitted.

    ``compensated`` is True once the request was rolled back to DRAFT.
    ``requires_reconciliation`` is True when that rollback itself failed.
    """

    code: str = "WORKFLOW_INIT_FAILED"

    def __init__(
        self,
        work_request_id: str,
        reason: str,
        cause: Exception | None = None,
        compensated: bool = False,
        requires_reconciliation: bool = False,
    ):
        self.work_request_id = work_request_id
        self.reason = reason
        self.cause = cause
        self.compensated = compensated
        self.requires_reconciliation = requires_reconciliation
        super().__init__(
            f"Approval workflow initialization failed for {work_request_id}: {reason}"
        )

    def with_compensation(
        self,
        *,
        compensated: bool,
        requires_reconciliation: bool = False,
    ) -> "WorkflowInitError":
        """Return a copy annotated with the outcome of the compensation step."""
        return WorkflowInitError(
            self.work_request_id,
            self.reason,
            cause=self.cause,
            compensated=compensated,
            requires_reconciliation=requires_reconciliation,
        )


class StatusAdvanceError(WorkflowError):
    """
    A decision committed but the work request could not be moved to the
    status that decision implies.

    The request is flagged for reconciliation: its chain is resolved while
    its status still reads UNDER_REVIEW.
    """

    code: str = "STATUS_ADVANCE_FAILED"

    def __init__(
        self,
        work_request_id: str,
        target_status: str,
        cause: Exception | None = None,
        requires_reconciliation: bool = True,
    ):
        self.work_request_id = work_request_id
        self.target_status = target_status
        self.cause = cause
        self.requires_reconciliation = requires_reconciliation
        super().__init__(
            f"Decision recorded for {work_request_id} but status could not "
            f"advance to {target_status}: {cause}"
        )


class CompensationFailedError(WorkflowError):
    """A compensating action exhausted its attempts."""

    code: str = "COMPENSATION_FAILED"

    def __init__(self, step_name: str, work_request_id: str, attempts: int, cause: Exception | None):
        self.step_name = step_name
        self.work_request_id = work_request_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Compensation '{step_name}' failed for {work_request_id} "
            f"after {attempts} attempt(s): {cause}"
        )


# Approval exceptions


class ApprovalError(WorkKernelError):
    """Base exception for approval decision errors."""

    code: str = "APPROVAL_ERROR"


class StaleApprovalError(ApprovalError):
    """The targeted step is no longer the current pending step."""

    code: str = "STALE_APPROVAL"

    def __init__(self, work_request_id: str, step_id: str | None, current_status: str):
        self.work_request_id = work_request_id
        self.step_id = step_id
        self.current_status = current_status
        super().__init__(
            f"Approval step {step_id} on work request {work_request_id} "
            f"is no longer pending (status '{current_status}')"
        )


class UnauthorizedApproverError(ApprovalError):
    """Actor is neither the step's approver nor its active delegate."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, work_request_id: str, approver_id: str, expected_approver_id: str):
        self.work_request_id = work_request_id
        self.approver_id = approver_id
        self.expected_approver_id = expected_approver_id
        super().__init__(
            f"User {approver_id} is not the current approver for "
            f"work request {work_request_id}"
        )


class ApprovalChainNotFoundError(ApprovalError):
    """No approval chain exists for the work request."""

    code: str = "APPROVAL_CHAIN_NOT_FOUND"

    def __init__(self, work_request_id: str):
        self.work_request_id = work_request_id
        super().__init__(f"No approval chain for work request {work_request_id}")


class InvalidDelegationError(ApprovalError):
    """Delegation target missing or equal to the delegating approver."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, work_request_id: str, reason: str):
        self.work_request_id = work_request_id
        self.reason = reason
        super().__init__(f"Invalid delegation on work request {work_request_id}: {reason}")


# Storage exceptions


class StorageError(WorkKernelError):
    """Base exception for persistence failures."""

    code: str = "STORAGE_ERROR"


class StorageUnavailable(StorageError):
    """Transient infrastructure failure; retry with backoff at the caller."""

    code: str = "STORAGE_UNAVAILABLE"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage unavailable during {operation}: {detail}")


# Immutability exceptions


class ImmutabilityError(WorkKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
