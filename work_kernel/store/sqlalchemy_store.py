"""
Module: work_kernel.store.sqlalchemy_store
Responsibility: SQLAlchemy implementation of ``VersionedEntityStore``.

Architecture position: Kernel > Store.  May import from db/, models/,
    domain/ and the kernel exceptions.

Invariants enforced:
    WR-2 -- ``compare_and_swap_work_request`` issues
            ``UPDATE work_requests SET ..., version = :expected + 1
            WHERE id = :id AND version = :expected`` and inspects the row
            count.  Zero rows means a conflict; nothing is merged.
    AP-1 -- ``compare_and_swap_step`` issues ``UPDATE approval_steps
            ... WHERE step_id = :id AND status = :expected``, plus
            ``AND coalesce(delegated_to, approver_id) = :owner`` when the
            caller names the owner it read.  A decision or delegation record
            is appended in the same transaction only when that update hit
            exactly one row, so each step accepts at most one terminal
            decision and each ownership at most one delegation.
    AP-3 -- Chains are created in one transaction together with all their
            steps; a unique constraint rejects a second chain for the same
            submission.

Failure modes:
    - StorageUnavailable when the driver reports an operational failure
      (lock timeout, lost connection).  IntegrityError is not wrapped.
    - OptimisticLockError from ``create_chain`` when a chain already exists
      for the submission.
    - ValueError when a patch tries to write ``id`` or ``version``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generator, Mapping
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from work_kernel.db.engine import session_scope
from work_kernel.domain.approval import (
    ApprovalChain,
    ApprovalChainPlan,
    ApprovalDecisionRecord,
    ApprovalStepStatus,
    DelegationRecord,
)
from work_kernel.domain.results import (
    CasOk,
    CasResult,
    StepCasOk,
    StepCasResult,
    StepConflict,
    VersionConflict,
)
from work_kernel.domain.work_request import (
    ReconciliationRecord,
    StatusHistoryEntry,
    Versioned,
    WorkRequest,
    WorkRequestStatus,
)
from work_kernel.exceptions import OptimisticLockError, StorageUnavailable
from work_kernel.logging_config import get_logger
from work_kernel.models.approval import (
    ApprovalChainModel,
    ApprovalDecisionModel,
    ApprovalStepModel,
    DelegationModel,
)
from work_kernel.models.reconciliation import ReconciliationRecordModel
from work_kernel.models.work_request import StatusHistoryModel, WorkRequestModel

logger = get_logger("store")

_PROTECTED_WORK_REQUEST_FIELDS = frozenset({"id", "version"})
_PROTECTED_STEP_FIELDS = frozenset({"id", "step_id", "chain_id", "position"})


def _column_values(patch: Mapping[str, Any], protected: frozenset[str]) -> dict[str, Any]:
    """Translate a domain patch into column values (enums stored by value)."""
    values: dict[str, Any] = {}
    for key, value in patch.items():
        if key in protected:
            raise ValueError(f"Field '{key}' cannot be written through a patch")
        values[key] = value.value if isinstance(value, Enum) else value
    return values


class SqlAlchemyVersionedStore:
    """
    Versioned entity store backed by SQLAlchemy.

    Contract:
        Holds a session factory, never a session.  Each public method opens
        its own ``session_scope`` and commits before returning, so the store
        is safe to share across threads.

    Guarantees:
        - Returned objects are frozen domain DTOs, never ORM instances.
        - Conditional writes report conflicts as values (``VersionConflict``,
          ``StepConflict``), not exceptions.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _scope(self, operation: str) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as exc:
            logger.warning(
                "storage_unavailable",
                extra={"operation": operation, "error": str(exc.orig or exc)},
            )
            raise StorageUnavailable(operation, str(exc.orig or exc)) from exc

    # =====================================================================
    # Work requests
    # =====================================================================

    def insert_work_request(self, work_request: WorkRequest) -> Versioned[WorkRequest]:
        with self._scope("insert_work_request") as session:
            model = WorkRequestModel.from_dto(work_request)
            session.add(model)
            session.flush()
            dto = model.to_dto()
        return Versioned(entity=dto, version=dto.version)

    def read_work_request(self, work_request_id: UUID) -> Versioned[WorkRequest] | None:
        """Read the request and the version it was read at; None if absent."""
        with self._scope("read_work_request") as session:
            model = session.get(WorkRequestModel, work_request_id)
            if model is None:
                return None
            dto = model.to_dto()
        return Versioned(entity=dto, version=dto.version)

    def compare_and_swap_work_request(
        self,
        work_request_id: UUID,
        expected_version: int,
        patch: Mapping[str, Any],
        history: StatusHistoryEntry | None = None,
    ) -> CasResult:
        """
        Apply ``patch`` only if the stored version equals ``expected_version``.

        On success the stored version becomes ``expected_version + 1`` and
        ``history`` (if given) is appended in the same transaction.
        """
        values = _column_values(patch, _PROTECTED_WORK_REQUEST_FIELDS)
        new_version = expected_version + 1

        with self._scope("compare_and_swap_work_request") as session:
            result = session.execute(
                update(WorkRequestModel)
                .where(
                    WorkRequestModel.id == work_request_id,
                    WorkRequestModel.version == expected_version,
                )
                .values(**values, version=new_version)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = session.scalar(
                    select(WorkRequestModel.version).where(
                        WorkRequestModel.id == work_request_id
                    )
                )
                logger.info(
                    "work_request_cas_conflict",
                    extra={
                        "work_request_id": str(work_request_id),
                        "expected_version": expected_version,
                        "actual_version": actual,
                    },
                )
                return VersionConflict(
                    expected_version=expected_version, actual_version=actual,
                )

            if history is not None:
                session.add(StatusHistoryModel.from_dto(history))

        return CasOk(new_version=new_version)

    def list_status_history(self, work_request_id: UUID) -> list[StatusHistoryEntry]:
        with self._scope("list_status_history") as session:
            rows = session.scalars(
                select(StatusHistoryModel)
                .where(StatusHistoryModel.work_request_id == work_request_id)
                .order_by(StatusHistoryModel.version)
            ).all()
            return [row.to_dto() for row in rows]

    # =====================================================================
    # Approval chains
    # =====================================================================

    def create_chain(
        self,
        work_request_id: UUID,
        organization_id: str,
        submission_number: int,
        plan: ApprovalChainPlan,
        created_at: datetime,
    ) -> ApprovalChain:
        """
        Persist a chain and all its steps in one transaction.

        Step ids are assigned here.  Every step starts pending; the first
        (current) step gets ``due_at = created_at + timeout_hours``.
        """
        chain_id = uuid4()
        first_position = min((s.position for s in plan.steps), default=None)

        try:
            with self._scope("create_chain") as session:
                model = ApprovalChainModel(
                    chain_id=chain_id,
                    work_request_id=work_request_id,
                    organization_id=organization_id,
                    submission_number=submission_number,
                    fingerprint=plan.fingerprint,
                    created_at=created_at,
                    is_frozen=False,
                )
                model.steps = [
                    ApprovalStepModel(
                        step_id=uuid4(),
                        chain_id=chain_id,
                        position=s.position,
                        approver_id=s.approver_id,
                        approver_role=s.approver_role.value,
                        approval_level=s.approval_level.value,
                        timeout_hours=s.timeout_hours,
                        status=ApprovalStepStatus.PENDING.value,
                        due_at=(
                            created_at + timedelta(hours=s.timeout_hours)
                            if s.position == first_position
                            else None
                        ),
                    )
                    for s in plan.steps
                ]
                session.add(model)
                session.flush()
                chain = model.to_dto()
        except IntegrityError as exc:
            raise OptimisticLockError(
                entity_type="ApprovalChain",
                entity_id=str(work_request_id),
            ) from exc

        logger.info(
            "approval_chain_persisted",
            extra={
                "work_request_id": str(work_request_id),
                "chain_id": str(chain_id),
                "submission_number": submission_number,
                "step_count": len(plan),
            },
        )
        return chain

    def delete_chain(self, chain_id: UUID) -> None:
        """Remove a chain that never received a decision."""
        with self._scope("delete_chain") as session:
            model = session.scalar(
                select(ApprovalChainModel).where(ApprovalChainModel.chain_id == chain_id)
            )
            if model is not None:
                session.delete(model)

    def read_latest_chain(self, work_request_id: UUID) -> ApprovalChain | None:
        with self._scope("read_latest_chain") as session:
            model = session.scalar(
                select(ApprovalChainModel)
                .where(ApprovalChainModel.work_request_id == work_request_id)
                .order_by(ApprovalChainModel.submission_number.desc())
                .limit(1)
            )
            return model.to_dto() if model is not None else None

    def compare_and_swap_step(
        self,
        step_id: UUID,
        expected_status: ApprovalStepStatus,
        patch: Mapping[str, Any],
        decision: ApprovalDecisionRecord | None = None,
        delegation: DelegationRecord | None = None,
        expected_owner: str | None = None,
    ) -> StepCasResult:
        """
        Apply ``patch`` only if the step is still in ``expected_status``
        and, when ``expected_owner`` is given, still owned by that actor
        (its delegate if set, else its approver).

        ``decision`` / ``delegation`` are appended in the same transaction
        when the write applies.
        """
        values = _column_values(patch, _PROTECTED_STEP_FIELDS)
        owner = func.coalesce(ApprovalStepModel.delegated_to, ApprovalStepModel.approver_id)
        conditions = [
            ApprovalStepModel.step_id == step_id,
            ApprovalStepModel.status == expected_status.value,
        ]
        if expected_owner is not None:
            conditions.append(owner == expected_owner)

        with self._scope("compare_and_swap_step") as session:
            result = session.execute(
                update(ApprovalStepModel)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                row = session.execute(
                    select(ApprovalStepModel.status, owner).where(
                        ApprovalStepModel.step_id == step_id
                    )
                ).first()
                actual_status, actual_owner = row if row is not None else (None, None)
                logger.info(
                    "approval_step_cas_conflict",
                    extra={
                        "step_id": str(step_id),
                        "expected_status": expected_status.value,
                        "actual_status": actual_status,
                        "expected_owner": expected_owner,
                        "actual_owner": actual_owner,
                    },
                )
                return StepConflict(
                    step_id=step_id,
                    actual_status=actual_status,
                    actual_owner=actual_owner,
                )

            if decision is not None or delegation is not None:
                chain_id = session.scalar(
                    select(ApprovalStepModel.chain_id).where(
                        ApprovalStepModel.step_id == step_id
                    )
                )
                if decision is not None:
                    session.add(ApprovalDecisionModel.from_dto(decision, chain_id))
                if delegation is not None:
                    session.add(DelegationModel.from_dto(delegation, chain_id))

        return StepCasOk(step_id=step_id)

    def freeze_chain(self, chain_id: UUID) -> tuple[UUID, ...]:
        """Mark remaining pending steps moot and freeze the chain.

        Returns the ids of the steps that were mooted.
        """
        with self._scope("freeze_chain") as session:
            pending_ids = tuple(
                session.scalars(
                    select(ApprovalStepModel.step_id).where(
                        ApprovalStepModel.chain_id == chain_id,
                        ApprovalStepModel.status == ApprovalStepStatus.PENDING.value,
                    )
                ).all()
            )
            session.execute(
                update(ApprovalStepModel)
                .where(
                    ApprovalStepModel.chain_id == chain_id,
                    ApprovalStepModel.status == ApprovalStepStatus.PENDING.value,
                )
                .values(status=ApprovalStepStatus.MOOT.value)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(ApprovalChainModel)
                .where(ApprovalChainModel.chain_id == chain_id)
                .values(is_frozen=True)
                .execution_options(synchronize_session=False)
            )
        return pending_ids

    def list_pending_chains(self, organization_id: str, approver_id: str) -> list[ApprovalChain]:
        """
        Chains under review in which ``approver_id`` owns a pending step.

        The caller narrows this to chains whose *current* step is owned by
        the approver; waiting steps further down the chain also match here.
        """
        owns_step = or_(
            ApprovalStepModel.delegated_to == approver_id,
            and_(
                ApprovalStepModel.delegated_to.is_(None),
                ApprovalStepModel.approver_id == approver_id,
            ),
        )
        with self._scope("list_pending_chains") as session:
            models = session.scalars(
                select(ApprovalChainModel)
                .join(
                    WorkRequestModel,
                    WorkRequestModel.id == ApprovalChainModel.work_request_id,
                )
                .join(
                    ApprovalStepModel,
                    ApprovalStepModel.chain_id == ApprovalChainModel.chain_id,
                )
                .where(
                    ApprovalChainModel.organization_id == organization_id,
                    ApprovalChainModel.is_frozen.is_(False),
                    WorkRequestModel.status == WorkRequestStatus.UNDER_REVIEW.value,
                    WorkRequestModel.is_deleted.is_(False),
                    ApprovalStepModel.status == ApprovalStepStatus.PENDING.value,
                    owns_step,
                )
                .order_by(ApprovalChainModel.created_at)
            ).unique().all()
            return [m.to_dto() for m in models]

    # =====================================================================
    # Reconciliation
    # =====================================================================

    def record_reconciliation(
        self,
        work_request_id: UUID,
        operation: str,
        failure_reason: str,
        created_at: datetime,
    ) -> ReconciliationRecord:
        with self._scope("record_reconciliation") as session:
            model = ReconciliationRecordModel(
                work_request_id=work_request_id,
                operation=operation,
                failure_reason=failure_reason,
                created_at=created_at,
                resolved=False,
            )
            session.add(model)
            session.flush()
            record = model.to_dto()

        logger.warning(
            "reconciliation_recorded",
            extra={
                "work_request_id": str(work_request_id),
                "operation": operation,
                "failure_reason": failure_reason,
            },
        )
        return record

    def list_reconciliation_records(self, unresolved_only: bool = True) -> list[ReconciliationRecord]:
        with self._scope("list_reconciliation_records") as session:
            stmt = select(ReconciliationRecordModel).order_by(
                ReconciliationRecordModel.created_at
            )
            if unresolved_only:
                stmt = stmt.where(ReconciliationRecordModel.resolved.is_(False))
            return [m.to_dto() for m in session.scalars(stmt).all()]
