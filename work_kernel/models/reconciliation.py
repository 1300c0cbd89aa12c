"""
Module: work_kernel.models.reconciliation
Responsibility: Records of compensation steps that could not complete.

A row here means a work request may be stuck in an intermediate status
(typically SUBMITTED with no approval chain) and needs operator attention.
Only ``resolved`` / ``resolved_at`` / ``resolved_by`` may change after insert.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from work_kernel.db.base import Base, UTCDateTime, UUIDString
from work_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from work_kernel.domain.work_request import ReconciliationRecord

_MUTABLE_FIELDS = frozenset({"resolved", "resolved_at", "resolved_by"})


class ReconciliationRecordModel(Base):
    __tablename__ = "reconciliation_records"

    __table_args__ = (
        Index("ix_reconciliation_records_open", "resolved", "created_at"),
    )

    work_request_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReconciliationRecord {self.id} wr={self.work_request_id} "
            f"op={self.operation} resolved={self.resolved}>"
        )

    def to_dto(self) -> ReconciliationRecord:
        from work_kernel.domain.work_request import ReconciliationRecord

        return ReconciliationRecord(
            record_id=self.id,
            work_request_id=self.work_request_id,
            operation=self.operation,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            resolved=self.resolved,
            resolved_at=self.resolved_at,
            resolved_by=self.resolved_by,
        )


@event.listens_for(ReconciliationRecordModel, "before_update")
def prevent_reconciliation_rewrite(mapper, connection, target):
    """Only the resolution fields may change."""
    from sqlalchemy import inspect

    state = inspect(target)
    for attr in state.attrs:
        if attr.key in _MUTABLE_FIELDS:
            continue
        if attr.history.has_changes():
            raise ImmutabilityViolationError(
                entity_type="ReconciliationRecord",
                entity_id=str(target.id),
                reason=f"Field '{attr.key}' is immutable after creation",
            )


@event.listens_for(ReconciliationRecordModel, "before_delete")
def prevent_reconciliation_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ReconciliationRecord",
        entity_id=str(target.id),
        reason="Reconciliation records cannot be deleted",
    )
