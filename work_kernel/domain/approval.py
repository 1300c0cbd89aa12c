"""
Approval domain types (``work_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the sequential approval workflow: step status
lifecycle, decisions, the builder's step plan, persisted chain/step
snapshots, immutable decision and delegation records, and the outcome of
applying a decision.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  May import only
from ``work_kernel.domain`` and ``work_kernel.utils.hashing``.

Invariants enforced
-------------------
* AP-1: Step lifecycle -- ``STEP_TRANSITIONS`` defines the only valid step
  status changes.  Only ``pending`` steps accept decisions.
* AP-2: Single current step -- the current step of a chain is the pending
  step with the lowest position; every other pending step is waiting.
* AP-3: Chains belong to one submission -- ``submission_number`` ties a
  chain to exactly one submission instance; chains are never reused.
* AP-4: Deterministic plan -- ``ApprovalChainPlan.canonical_bytes()`` is a
  pure function of the plan's fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from work_kernel.domain.work_request import WorkRequestStatus
from work_kernel.utils.hashing import canonicalize_json, hash_payload


# =========================================================================
# Step Status Lifecycle (AP-1)
# =========================================================================


class ApprovalStepStatus(str, Enum):
    """Approval step states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    MOOT = "moot"


STEP_TRANSITIONS: dict[ApprovalStepStatus, frozenset[ApprovalStepStatus]] = {
    ApprovalStepStatus.PENDING: frozenset({
        ApprovalStepStatus.APPROVED,
        ApprovalStepStatus.REJECTED,
        ApprovalStepStatus.MOOT,
    }),
    # Delegated steps stay pending; DELEGATED only labels delegation rows.
    ApprovalStepStatus.APPROVED: frozenset(),
    ApprovalStepStatus.REJECTED: frozenset(),
    ApprovalStepStatus.DELEGATED: frozenset(),
    ApprovalStepStatus.MOOT: frozenset(),
}


class ApprovalDecision(str, Enum):
    """Decision types an approver can make."""

    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"


class ApprovalLevel(str, Enum):
    """Authority level of a step, lowest to highest."""

    STANDARD = "standard"
    ELEVATED = "elevated"
    EXECUTIVE = "executive"


class ApproverRole(str, Enum):
    """Why a step exists in the chain."""

    OPERATIONS_LEAD = "operations_lead"
    REVIEWER = "reviewer"
    FINANCE = "finance"


# =========================================================================
# Chain policy
# =========================================================================


@dataclass(frozen=True)
class ChainPolicy:
    """Approver assignments and thresholds the chain builder reads.

    ``review_approvers[0]`` signs level 1 (standard), ``review_approvers[1]``
    signs level 2 (elevated) for high and critical priority requests.
    """

    review_approvers: tuple[str, ...]
    operations_lead_id: str
    finance_approver_id: str
    finance_threshold: Decimal = Decimal("10000")
    standard_timeout_hours: int = 24
    elevated_timeout_hours: int = 24
    executive_timeout_hours: int = 48
    emergency_timeout_hours: int = 2
    default_estimated_approval_hours: int = 24

    def __post_init__(self) -> None:
        if len(self.review_approvers) < 2:
            raise ValueError("ChainPolicy needs two review approvers (standard, elevated)")
        if not all(self.review_approvers):
            raise ValueError("Review approver ids must be non-empty")
        if not self.operations_lead_id or not self.finance_approver_id:
            raise ValueError("Operations lead and finance approver ids must be non-empty")
        if self.finance_threshold < 0:
            raise ValueError("finance_threshold must be >= 0")
        for name in (
            "standard_timeout_hours",
            "elevated_timeout_hours",
            "executive_timeout_hours",
            "emergency_timeout_hours",
            "default_estimated_approval_hours",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    def timeout_for(self, level: ApprovalLevel) -> int:
        if level == ApprovalLevel.EXECUTIVE:
            return self.executive_timeout_hours
        if level == ApprovalLevel.ELEVATED:
            return self.elevated_timeout_hours
        return self.standard_timeout_hours


# =========================================================================
# Builder output (AP-4)
# =========================================================================


@dataclass(frozen=True)
class StepPlan:
    """One planned step.  Positions are 1-based and contiguous."""

    position: int
    approver_id: str
    approver_role: ApproverRole
    approval_level: ApprovalLevel
    timeout_hours: int

    def as_dict(self) -> dict:
        return {
            "position": self.position,
            "approver_id": self.approver_id,
            "approver_role": self.approver_role.value,
            "approval_level": self.approval_level.value,
            "timeout_hours": self.timeout_hours,
        }


@dataclass(frozen=True)
class ApprovalChainPlan:
    """The ordered step list derived from a work request's attributes."""

    steps: tuple[StepPlan, ...]

    def canonical_bytes(self) -> bytes:
        """Canonical JSON encoding; identical plans give identical bytes."""
        return canonicalize_json([s.as_dict() for s in self.steps]).encode("utf-8")

    @property
    def fingerprint(self) -> str:
        return hash_payload({"steps": [s.as_dict() for s in self.steps]})

    @property
    def approval_level(self) -> ApprovalLevel:
        """Highest level present in the plan."""
        levels = {s.approval_level for s in self.steps}
        for level in (ApprovalLevel.EXECUTIVE, ApprovalLevel.ELEVATED):
            if level in levels:
                return level
        return ApprovalLevel.STANDARD

    def __len__(self) -> int:
        return len(self.steps)


# =========================================================================
# Persisted snapshots
# =========================================================================


@dataclass(frozen=True)
class ApprovalStep:
    """Snapshot of one persisted approval step."""

    step_id: UUID
    chain_id: UUID
    position: int
    approver_id: str
    approver_role: ApproverRole
    approval_level: ApprovalLevel
    timeout_hours: int = 24
    status: ApprovalStepStatus = ApprovalStepStatus.PENDING
    decision: ApprovalDecision | None = None
    comments: str | None = None
    decided_at: datetime | None = None
    delegated_to: str | None = None
    delegated_from: str | None = None
    due_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStepStatus.PENDING

    def is_owned_by(self, actor_id: str) -> bool:
        """Owner is the active delegate when one exists, else the approver."""
        owner = self.delegated_to or self.approver_id
        return owner == actor_id

    @property
    def owner_id(self) -> str:
        return self.delegated_to or self.approver_id


@dataclass(frozen=True)
class ApprovalDecisionRecord:
    """Record of a single decision. Immutable."""

    decision_id: UUID
    step_id: UUID
    work_request_id: UUID
    actor_id: str
    decision: ApprovalDecision
    comments: str = ""
    decided_at: datetime | None = None


@dataclass(frozen=True)
class DelegationRecord:
    """Provenance of a delegation: who handed the step to whom, and when."""

    delegation_id: UUID
    step_id: UUID
    delegated_by: str
    delegated_to: str
    delegated_at: datetime
    comments: str = ""


@dataclass(frozen=True)
class ApprovalChain:
    """Snapshot of the chain for one submission instance (AP-3)."""

    chain_id: UUID
    work_request_id: UUID
    organization_id: str
    submission_number: int
    steps: tuple[ApprovalStep, ...]
    fingerprint: str
    created_at: datetime | None = None
    is_frozen: bool = False
    decisions: tuple[ApprovalDecisionRecord, ...] = ()
    delegations: tuple[DelegationRecord, ...] = ()

    @property
    def current_step(self) -> ApprovalStep | None:
        """AP-2: lowest-position pending step, or None when resolved."""
        if self.is_frozen:
            return None
        pending = [s for s in self.steps if s.is_pending]
        if not pending:
            return None
        return min(pending, key=lambda s: s.position)

    @property
    def is_complete(self) -> bool:
        return bool(self.steps) and all(
            s.status == ApprovalStepStatus.APPROVED for s in self.steps
        )

    def step(self, step_id: UUID) -> ApprovalStep | None:
        for s in self.steps:
            if s.step_id == step_id:
                return s
        return None


# =========================================================================
# Decision outcome
# =========================================================================


@dataclass(frozen=True)
class DecisionOutcome:
    """What applying one decision did to the chain and the work request."""

    work_request_id: UUID
    step_id: UUID
    decision: ApprovalDecision
    work_request_status: WorkRequestStatus
    next_step: ApprovalStep | None = None
    moot_step_ids: tuple[UUID, ...] = ()
    chain: ApprovalChain | None = None
