"""
Work request domain types (``work_kernel.domain.work_request``).

Responsibility
--------------
Pure value objects for work requests: the status enum and its legal-edge
table, the classification enums the approval policy reads, the frozen
``WorkRequest`` snapshot returned by the store, and the explicit
per-operation command/context records.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``store/`` or outer layers.

Invariants enforced
-------------------
* WR-1: ``WORK_REQUEST_TRANSITIONS`` is the only source of legal edges.
  ``completed`` and ``cancelled`` have no outgoing edges.
* WR-2: ``WorkRequest.version`` is a monotonic integer starting at 1.
* WR-3: ``REASON_REQUIRED_STATUSES`` (cancelled, rejected) can only be
  entered with a non-empty reason.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID


# =========================================================================
# Status Lifecycle (WR-1)
# =========================================================================


class WorkRequestStatus(str, Enum):
    """Work request lifecycle states."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


WORK_REQUEST_TRANSITIONS: dict[WorkRequestStatus, frozenset[WorkRequestStatus]] = {
    WorkRequestStatus.DRAFT: frozenset({
        WorkRequestStatus.SUBMITTED,
        WorkRequestStatus.CANCELLED,
    }),
    WorkRequestStatus.SUBMITTED: frozenset({
        WorkRequestStatus.UNDER_REVIEW,
        WorkRequestStatus.CANCELLED,
    }),
    WorkRequestStatus.UNDER_REVIEW: frozenset({
        WorkRequestStatus.APPROVED,
        WorkRequestStatus.REJECTED,
        WorkRequestStatus.CANCELLED,
    }),
    WorkRequestStatus.APPROVED: frozenset({WorkRequestStatus.IN_PROGRESS}),
    WorkRequestStatus.IN_PROGRESS: frozenset({WorkRequestStatus.COMPLETED}),
    # Resubmission path: a rejected request is reopened as a draft.
    WorkRequestStatus.REJECTED: frozenset({WorkRequestStatus.DRAFT}),
    WorkRequestStatus.COMPLETED: frozenset(),
    WorkRequestStatus.CANCELLED: frozenset(),
}

# Only reachable through a compensation step after workflow init failure.
COMPENSATION_TRANSITIONS: dict[WorkRequestStatus, frozenset[WorkRequestStatus]] = {
    WorkRequestStatus.SUBMITTED: frozenset({WorkRequestStatus.DRAFT}),
}

TERMINAL_STATUSES: frozenset[WorkRequestStatus] = frozenset({
    WorkRequestStatus.COMPLETED,
    WorkRequestStatus.CANCELLED,
})

REASON_REQUIRED_STATUSES: frozenset[WorkRequestStatus] = frozenset({
    WorkRequestStatus.CANCELLED,
    WorkRequestStatus.REJECTED,
})

DELETABLE_STATUSES: frozenset[WorkRequestStatus] = frozenset({
    WorkRequestStatus.DRAFT,
    WorkRequestStatus.CANCELLED,
})


# =========================================================================
# Classification
# =========================================================================


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Urgency(str, Enum):
    ROUTINE = "routine"
    SCHEDULED = "scheduled"
    URGENT = "urgent"
    IMMEDIATE = "immediate"


class ImpactLevel(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL_CLOSURE = "full_closure"


class WorkType(str, Enum):
    MAINTENANCE = "maintenance"
    INSPECTION = "inspection"
    REPAIR = "repair"
    MODIFICATION = "modification"
    EMERGENCY = "emergency"


class AssetType(str, Enum):
    STAND = "stand"
    AIRFIELD = "airfield"
    BAGGAGE = "baggage"
    TERMINAL = "terminal"
    GATE = "gate"


# =========================================================================
# Snapshots
# =========================================================================


@dataclass(frozen=True)
class WorkRequest:
    """Immutable snapshot of a work request as last persisted.

    WR-2: ``version`` increments by exactly one per successful mutation.
    """

    id: UUID
    organization_id: str
    title: str
    requested_by: str
    status: WorkRequestStatus = WorkRequestStatus.DRAFT
    priority: Priority = Priority.MEDIUM
    urgency: Urgency = Urgency.ROUTINE
    impact_level: ImpactLevel = ImpactLevel.NONE
    work_type: WorkType = WorkType.MAINTENANCE
    asset_id: str | None = None
    asset_type: AssetType | None = None
    description: str = ""
    estimated_total_cost: Decimal | None = None
    version: int = 1
    submission_count: int = 0
    status_reason: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    review_started_at: datetime | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    delete_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One append-only row of the status audit trail."""

    work_request_id: UUID
    from_status: WorkRequestStatus
    to_status: WorkRequestStatus
    changed_by: str
    changed_at: datetime
    version: int
    reason: str | None = None


T = TypeVar("T")


@dataclass(frozen=True)
class Versioned(Generic[T]):
    """An entity together with the version it was read at."""

    entity: T
    version: int


# =========================================================================
# Commands and contexts
# =========================================================================


@dataclass(frozen=True)
class CreateWorkRequestCommand:
    """Fields a requestor supplies when opening a draft."""

    organization_id: str
    requested_by: str
    title: str
    priority: Priority = Priority.MEDIUM
    urgency: Urgency = Urgency.ROUTINE
    impact_level: ImpactLevel = ImpactLevel.NONE
    work_type: WorkType = WorkType.MAINTENANCE
    asset_id: str | None = None
    asset_type: AssetType | None = None
    description: str = ""
    estimated_total_cost: Decimal | None = None


# Fields that may be edited while a request is still a draft.
EDITABLE_DRAFT_FIELDS: frozenset[str] = frozenset({
    "title",
    "description",
    "priority",
    "urgency",
    "impact_level",
    "work_type",
    "asset_id",
    "asset_type",
    "estimated_total_cost",
})


@dataclass(frozen=True)
class SubmitContext:
    """Who is submitting, on behalf of which organization."""

    user_id: str
    organization_id: str


@dataclass(frozen=True)
class TransitionContext:
    """Caller-supplied data for a single status transition.

    ``compensation`` unlocks the SUBMITTED -> DRAFT rollback edge and must
    only be set by the compensation step.
    """

    user_id: str
    reason: str | None = None
    compensation: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconciliationRecord:
    """A compensation that could not complete and needs operator attention."""

    record_id: UUID
    work_request_id: UUID
    operation: str
    failure_reason: str
    created_at: datetime
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
