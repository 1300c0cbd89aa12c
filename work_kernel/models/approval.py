"""
Module: work_kernel.models.approval
Responsibility: ORM persistence for approval chains, steps, decisions and
    delegations.

Architecture position: Kernel > Models.  May import from db/base.py and
    the kernel exceptions only.

Invariants enforced:
    AP-1 -- Step status limited by a check constraint; the store writes
            step status only through ``UPDATE ... WHERE status = :expected``.
    AP-3 -- UNIQUE(work_request_id, submission_number): one chain per
            submission instance.
    Decisions and delegations are append-only.

Failure modes:
    - IntegrityError when a second chain is created for the same
      submission (AP-3).
    - ImmutabilityViolationError on decision/delegation UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from work_kernel.db.base import Base, UTCDateTime, UUIDString
from work_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from work_kernel.domain.approval import (
        ApprovalChain,
        ApprovalDecisionRecord,
        ApprovalStep,
        DelegationRecord,
    )


class ApprovalChainModel(Base):
    """Persistent approval chain for one submission of a work request."""

    __tablename__ = "approval_chains"

    __table_args__ = (
        UniqueConstraint(
            "work_request_id", "submission_number",
            name="uq_approval_chains_submission",
        ),
        Index("ix_approval_chains_org", "organization_id", "is_frozen"),
    )

    chain_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    work_request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("work_requests.id"), nullable=False,
    )
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    submission_number: Mapped[int] = mapped_column(Integer, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        "ApprovalStepModel",
        primaryjoin="ApprovalChainModel.chain_id == ApprovalStepModel.chain_id",
        order_by="ApprovalStepModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    decisions: Mapped[list["ApprovalDecisionModel"]] = relationship(
        "ApprovalDecisionModel",
        primaryjoin="ApprovalChainModel.chain_id == ApprovalDecisionModel.chain_id",
        order_by="ApprovalDecisionModel.decided_at",
        lazy="selectin",
        viewonly=True,
    )
    delegations: Mapped[list["DelegationModel"]] = relationship(
        "DelegationModel",
        primaryjoin="ApprovalChainModel.chain_id == DelegationModel.chain_id",
        order_by="DelegationModel.delegated_at",
        lazy="selectin",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalChain {self.chain_id} wr={self.work_request_id} "
            f"#{self.submission_number} frozen={self.is_frozen}>"
        )

    def to_dto(self) -> ApprovalChain:
        """Convert ORM model (with its steps and records) to a frozen DTO."""
        from work_kernel.domain.approval import ApprovalChain

        return ApprovalChain(
            chain_id=self.chain_id,
            work_request_id=self.work_request_id,
            organization_id=self.organization_id,
            submission_number=self.submission_number,
            steps=tuple(s.to_dto() for s in self.steps),
            fingerprint=self.fingerprint,
            created_at=self.created_at,
            is_frozen=self.is_frozen,
            decisions=tuple(d.to_dto() for d in self.decisions),
            delegations=tuple(d.to_dto() for d in self.delegations),
        )


class ApprovalStepModel(Base):
    """One step of an approval chain."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'delegated', 'moot')",
            name="ck_approval_steps_valid_status",
        ),
        UniqueConstraint("chain_id", "position", name="uq_approval_steps_position"),
        Index("ix_approval_steps_owner", "status", "approver_id", "delegated_to"),
    )

    step_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    chain_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_chains.chain_id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(30), nullable=False)
    approval_level: Mapped[str] = mapped_column(String(20), nullable=False)
    timeout_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delegated_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    delegated_from: Mapped[str | None] = mapped_column(String(100), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalStep {self.step_id} #{self.position} status={self.status}>"

    def to_dto(self) -> ApprovalStep:
        from work_kernel.domain.approval import (
            ApprovalDecision,
            ApprovalLevel,
            ApprovalStep,
            ApprovalStepStatus,
            ApproverRole,
        )

        return ApprovalStep(
            step_id=self.step_id,
            chain_id=self.chain_id,
            position=self.position,
            approver_id=self.approver_id,
            approver_role=ApproverRole(self.approver_role),
            approval_level=ApprovalLevel(self.approval_level),
            timeout_hours=self.timeout_hours,
            status=ApprovalStepStatus(self.status),
            decision=ApprovalDecision(self.decision) if self.decision else None,
            comments=self.comments,
            decided_at=self.decided_at,
            delegated_to=self.delegated_to,
            delegated_from=self.delegated_from,
            due_at=self.due_at,
        )


class ApprovalDecisionModel(Base):
    """Persistent decision record. Append-only."""

    __tablename__ = "approval_step_decisions"

    __table_args__ = (
        Index("ix_approval_step_decisions_chain", "chain_id"),
    )

    decision_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    chain_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_chains.chain_id"), nullable=False,
    )
    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.step_id"), nullable=False,
    )
    work_request_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="", nullable=False)
    decided_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_dto(self) -> ApprovalDecisionRecord:
        from work_kernel.domain.approval import (
            ApprovalDecision,
            ApprovalDecisionRecord,
        )

        return ApprovalDecisionRecord(
            decision_id=self.decision_id,
            step_id=self.step_id,
            work_request_id=self.work_request_id,
            actor_id=self.actor_id,
            decision=ApprovalDecision(self.decision),
            comments=self.comments,
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalDecisionRecord, chain_id: UUID) -> ApprovalDecisionModel:
        return cls(
            decision_id=dto.decision_id,
            chain_id=chain_id,
            step_id=dto.step_id,
            work_request_id=dto.work_request_id,
            actor_id=dto.actor_id,
            decision=dto.decision.value,
            comments=dto.comments,
            decided_at=dto.decided_at,
        )


class DelegationModel(Base):
    """Who handed a step to whom. Append-only."""

    __tablename__ = "approval_delegations"

    delegation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    chain_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_chains.chain_id"), nullable=False,
    )
    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.step_id"), nullable=False,
    )
    delegated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    delegated_to: Mapped[str] = mapped_column(String(100), nullable=False)
    delegated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="", nullable=False)

    def to_dto(self) -> DelegationRecord:
        from work_kernel.domain.approval import DelegationRecord

        return DelegationRecord(
            delegation_id=self.delegation_id,
            step_id=self.step_id,
            delegated_by=self.delegated_by,
            delegated_to=self.delegated_to,
            delegated_at=self.delegated_at,
            comments=self.comments,
        )

    @classmethod
    def from_dto(cls, dto: DelegationRecord, chain_id: UUID) -> DelegationModel:
        return cls(
            delegation_id=dto.delegation_id,
            chain_id=chain_id,
            step_id=dto.step_id,
            delegated_by=dto.delegated_by,
            delegated_to=dto.delegated_to,
            delegated_at=dto.delegated_at,
            comments=dto.comments,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    """Prevent updates to approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.decision_id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    """Prevent deletion of approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.decision_id),
        reason="Approval decisions are immutable -- cannot delete",
    )


@event.listens_for(DelegationModel, "before_update")
def prevent_delegation_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Delegation",
        entity_id=str(target.delegation_id),
        reason="Delegation records are immutable -- cannot modify",
    )


@event.listens_for(DelegationModel, "before_delete")
def prevent_delegation_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Delegation",
        entity_id=str(target.delegation_id),
        reason="Delegation records are immutable -- cannot delete",
    )
