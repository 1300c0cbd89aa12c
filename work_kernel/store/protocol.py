"""
Module: work_kernel.store.protocol
Responsibility: The persistence contract the services depend on.

Architecture position: Kernel > Store.  Depends on domain types only.

Every operation is its own atomic unit.  There is no cross-call
transaction: a work-request write and an approval-chain write are two
independent commits, which is why the lifecycle service carries
compensation logic.

Writes are conditional.  ``compare_and_swap_work_request`` applies only if
the stored version still equals ``expected_version``; ``compare_and_swap_step``
applies only if the stored step status still equals ``expected_status``
(and, when ``expected_owner`` is given, the step is still owned by it).
Neither ever merges.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import UUID

from work_kernel.domain.approval import (
    ApprovalChain,
    ApprovalChainPlan,
    ApprovalDecisionRecord,
    ApprovalStepStatus,
    DelegationRecord,
)
from work_kernel.domain.results import CasResult, StepCasResult
from work_kernel.domain.work_request import (
    ReconciliationRecord,
    StatusHistoryEntry,
    Versioned,
    WorkRequest,
)


@runtime_checkable
class VersionedEntityStore(Protocol):
    # -- work requests -----------------------------------------------------

    def insert_work_request(self, work_request: WorkRequest) -> Versioned[WorkRequest]:
        ...

    def read_work_request(self, work_request_id: UUID) -> Versioned[WorkRequest] | None:
        ...

    def compare_and_swap_work_request(
        self,
        work_request_id: UUID,
        expected_version: int,
        patch: Mapping[str, Any],
        history: StatusHistoryEntry | None = None,
    ) -> CasResult:
        ...

    def list_status_history(self, work_request_id: UUID) -> list[StatusHistoryEntry]:
        ...

    # -- approval chains ---------------------------------------------------

    def create_chain(
        self,
        work_request_id: UUID,
        organization_id: str,
        submission_number: int,
        plan: ApprovalChainPlan,
        created_at: datetime,
    ) -> ApprovalChain:
        ...

    def delete_chain(self, chain_id: UUID) -> None:
        ...

    def read_latest_chain(self, work_request_id: UUID) -> ApprovalChain | None:
        ...

    def compare_and_swap_step(
        self,
        step_id: UUID,
        expected_status: ApprovalStepStatus,
        patch: Mapping[str, Any],
        decision: ApprovalDecisionRecord | None = None,
        delegation: DelegationRecord | None = None,
        expected_owner: str | None = None,
    ) -> StepCasResult:
        ...

    def freeze_chain(self, chain_id: UUID) -> tuple[UUID, ...]:
        ...

    def list_pending_chains(self, organization_id: str, approver_id: str) -> list[ApprovalChain]:
        ...

    # -- reconciliation ----------------------------------------------------

    def record_reconciliation(
        self,
        work_request_id: UUID,
        operation: str,
        failure_reason: str,
        created_at: datetime,
    ) -> ReconciliationRecord:
        ...

    def list_reconciliation_records(self, unresolved_only: bool = True) -> list[ReconciliationRecord]:
        ...
