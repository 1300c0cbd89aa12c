"""
Module: work_kernel.models.work_request
Responsibility: ORM persistence for work requests and their status history.

Architecture position: Kernel > Models.  May import from db/base.py and
    the kernel exceptions only.

Invariants enforced:
    WR-1 -- Status values limited by a check constraint; transition rules
            are enforced by the state machine before any write.
    WR-2 -- ``version`` is the optimistic-lock column.  The store only ever
            writes it through ``UPDATE ... WHERE version = :expected``.
    Soft delete -- rows are never physically removed; ``is_deleted`` and
            the ``deleted_*`` columns record who removed the request.
    History -- ``work_request_status_history`` rows are append-only.

Failure modes:
    - ImmutabilityViolationError on status-history UPDATE/DELETE.
    - ImmutabilityViolationError on physical DELETE of a work request.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from work_kernel.db.base import Base, UTCDateTime, UUIDString
from work_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from work_kernel.domain.work_request import StatusHistoryEntry, WorkRequest

_STATUS_VALUES = (
    "'draft', 'submitted', 'under_review', 'approved', "
    "'rejected', 'in_progress', 'completed', 'cancelled'"
)


class WorkRequestModel(Base):
    """Persistent work request.

    Contract:
        Every mutation goes through compare-and-swap on ``version``.

    Guarantees:
        - ``version`` >= 1.
        - ``status`` is one of the lifecycle values.
    """

    __tablename__ = "work_requests"

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_STATUS_VALUES})",
            name="ck_work_requests_valid_status",
        ),
        CheckConstraint("version >= 1", name="ck_work_requests_version_positive"),
        Index("ix_work_requests_org_status", "organization_id", "status"),
    )

    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    urgency: Mapped[str] = mapped_column(String(20), nullable=False)
    impact_level: Mapped[str] = mapped_column(String(20), nullable=False)
    work_type: Mapped[str] = mapped_column(String(30), nullable=False)
    asset_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    asset_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    estimated_total_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    review_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    delete_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WorkRequest {self.id} status={self.status} v{self.version}>"

    def to_dto(self) -> WorkRequest:
        """Convert ORM model to frozen domain DTO."""
        from work_kernel.domain.work_request import (
            AssetType,
            ImpactLevel,
            Priority,
            Urgency,
            WorkRequest,
            WorkRequestStatus,
            WorkType,
        )

        return WorkRequest(
            id=self.id,
            organization_id=self.organization_id,
            title=self.title,
            requested_by=self.requested_by,
            status=WorkRequestStatus(self.status),
            priority=Priority(self.priority),
            urgency=Urgency(self.urgency),
            impact_level=ImpactLevel(self.impact_level),
            work_type=WorkType(self.work_type),
            asset_id=self.asset_id,
            asset_type=AssetType(self.asset_type) if self.asset_type else None,
            description=self.description,
            estimated_total_cost=self.estimated_total_cost,
            version=self.version,
            submission_count=self.submission_count,
            status_reason=self.status_reason,
            updated_by=self.updated_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
            submitted_at=self.submitted_at,
            review_started_at=self.review_started_at,
            approved_at=self.approved_at,
            completed_at=self.completed_at,
            is_deleted=self.is_deleted,
            deleted_at=self.deleted_at,
            deleted_by=self.deleted_by,
            delete_reason=self.delete_reason,
        )

    @classmethod
    def from_dto(cls, dto: WorkRequest) -> WorkRequestModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            title=dto.title,
            description=dto.description,
            requested_by=dto.requested_by,
            status=dto.status.value,
            priority=dto.priority.value,
            urgency=dto.urgency.value,
            impact_level=dto.impact_level.value,
            work_type=dto.work_type.value,
            asset_id=dto.asset_id,
            asset_type=dto.asset_type.value if dto.asset_type else None,
            estimated_total_cost=dto.estimated_total_cost,
            version=dto.version,
            submission_count=dto.submission_count,
            status_reason=dto.status_reason,
            updated_by=dto.updated_by,
            created_at=dto.created_at,
            updated_at=dto.updated_at or dto.created_at,
            submitted_at=dto.submitted_at,
            review_started_at=dto.review_started_at,
            approved_at=dto.approved_at,
            completed_at=dto.completed_at,
            is_deleted=dto.is_deleted,
            deleted_at=dto.deleted_at,
            deleted_by=dto.deleted_by,
            delete_reason=dto.delete_reason,
        )


class StatusHistoryModel(Base):
    """One status change of a work request. Append-only."""

    __tablename__ = "work_request_status_history"

    __table_args__ = (
        Index("ix_status_history_work_request", "work_request_id", "version"),
    )

    work_request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("work_requests.id"), nullable=False,
    )
    from_status: Mapped[str] = mapped_column(String(30), nullable=False)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    def to_dto(self) -> StatusHistoryEntry:
        from work_kernel.domain.work_request import (
            StatusHistoryEntry,
            WorkRequestStatus,
        )

        return StatusHistoryEntry(
            work_request_id=self.work_request_id,
            from_status=WorkRequestStatus(self.from_status),
            to_status=WorkRequestStatus(self.to_status),
            changed_by=self.changed_by,
            changed_at=self.changed_at,
            version=self.version,
            reason=self.reason,
        )

    @classmethod
    def from_dto(cls, dto: StatusHistoryEntry) -> StatusHistoryModel:
        return cls(
            work_request_id=dto.work_request_id,
            from_status=dto.from_status.value,
            to_status=dto.to_status.value,
            reason=dto.reason,
            changed_by=dto.changed_by,
            changed_at=dto.changed_at,
            version=dto.version,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================


@event.listens_for(WorkRequestModel, "before_delete")
def prevent_work_request_delete(mapper, connection, target):
    """Work requests are soft-deleted only."""
    raise ImmutabilityViolationError(
        entity_type="WorkRequest",
        entity_id=str(target.id),
        reason="Work requests are never physically deleted -- use soft delete",
    )


@event.listens_for(StatusHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="StatusHistoryEntry",
        entity_id=str(target.id),
        reason="Status history is append-only -- cannot modify",
    )


@event.listens_for(StatusHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="StatusHistoryEntry",
        entity_id=str(target.id),
        reason="Status history is append-only -- cannot delete",
    )
