"""
Pure domain layer.

Immutable value objects and enums with NO dependencies on the ORM, the
database, the clock, or any other I/O.
"""

from work_kernel.domain.approval import (
    STEP_TRANSITIONS,
    ApprovalChain,
    ApprovalChainPlan,
    ApprovalDecision,
    ApprovalDecisionRecord,
    ApprovalLevel,
    ApprovalStep,
    ApprovalStepStatus,
    ApproverRole,
    ChainPolicy,
    DecisionOutcome,
    DelegationRecord,
    StepPlan,
)
from work_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from work_kernel.domain.events import (
    CacheInvalidator,
    NotificationDispatcher,
    NotificationEventType,
    NullCacheInvalidator,
    NullNotificationDispatcher,
)
from work_kernel.domain.results import (
    BulkFailure,
    BulkResult,
    CasOk,
    Result,
    StepCasOk,
    StepConflict,
    SubmitReceipt,
    VersionConflict,
)
from work_kernel.domain.work_request import (
    REASON_REQUIRED_STATUSES,
    TERMINAL_STATUSES,
    WORK_REQUEST_TRANSITIONS,
    AssetType,
    CreateWorkRequestCommand,
    ImpactLevel,
    Priority,
    ReconciliationRecord,
    StatusHistoryEntry,
    SubmitContext,
    TransitionContext,
    Urgency,
    Versioned,
    WorkRequest,
    WorkRequestStatus,
    WorkType,
)

__all__ = [
    # Work requests
    "WorkRequest",
    "WorkRequestStatus",
    "WORK_REQUEST_TRANSITIONS",
    "TERMINAL_STATUSES",
    "REASON_REQUIRED_STATUSES",
    "Priority",
    "Urgency",
    "ImpactLevel",
    "WorkType",
    "AssetType",
    "StatusHistoryEntry",
    "ReconciliationRecord",
    "Versioned",
    "CreateWorkRequestCommand",
    "SubmitContext",
    "TransitionContext",
    # Approvals
    "ApprovalChain",
    "ApprovalChainPlan",
    "ApprovalDecision",
    "ApprovalDecisionRecord",
    "ApprovalLevel",
    "ChainPolicy",
    "ApprovalStep",
    "ApprovalStepStatus",
    "ApproverRole",
    "DecisionOutcome",
    "DelegationRecord",
    "StepPlan",
    "STEP_TRANSITIONS",
    # Results
    "Result",
    "CasOk",
    "VersionConflict",
    "StepCasOk",
    "StepConflict",
    "SubmitReceipt",
    "BulkFailure",
    "BulkResult",
    # Collaborators
    "NotificationDispatcher",
    "NotificationEventType",
    "CacheInvalidator",
    "NullNotificationDispatcher",
    "NullCacheInvalidator",
    # Time
    "Clock",
    "SystemClock",
    "DeterministicClock",
]
