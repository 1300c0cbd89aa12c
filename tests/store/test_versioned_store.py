"""
Tests for SqlAlchemyVersionedStore.

Tests cover:
- Work request compare-and-swap: version bump, conflict as a value
- Status history appended with the CAS and immutable afterwards
- Chain creation: one chain per submission, first step due date
- Step compare-and-swap: at most one terminal decision, expected owner
- Physical deletes of work requests rejected
- Driver failures surfaced as StorageUnavailable
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from work_kernel.db.engine import session_scope
from work_kernel.domain.approval import (
    ApprovalChainPlan,
    ApprovalDecision,
    ApprovalDecisionRecord,
    ApprovalLevel,
    ApprovalStepStatus,
    ApproverRole,
    StepPlan,
)
from work_kernel.domain.results import CasOk, StepCasOk, StepConflict, VersionConflict
from work_kernel.domain.work_request import (
    StatusHistoryEntry,
    WorkRequest,
    WorkRequestStatus,
)
from work_kernel.exceptions import (
    ImmutabilityViolationError,
    OptimisticLockError,
    StorageUnavailable,
)
from work_kernel.models import (
    ApprovalDecisionModel,
    StatusHistoryModel,
    WorkRequestModel,
)
from work_kernel.store import SqlAlchemyVersionedStore, VersionedEntityStore


def new_request(clock) -> WorkRequest:
    now = clock.now()
    return WorkRequest(
        id=uuid4(),
        organization_id="org-1",
        title="Inspect baggage belt 3",
        requested_by="requestor",
        estimated_total_cost=Decimal("1200.50"),
        created_at=now,
        updated_at=now,
    )


def two_step_plan() -> ApprovalChainPlan:
    return ApprovalChainPlan(steps=(
        StepPlan(1, "supervisor", ApproverRole.REVIEWER, ApprovalLevel.STANDARD, 24),
        StepPlan(2, "manager", ApproverRole.REVIEWER, ApprovalLevel.ELEVATED, 24),
    ))


class TestWorkRequestCas:
    def test_store_satisfies_protocol(self, store):
        assert isinstance(store, VersionedEntityStore)

    def test_insert_and_read_round_trip(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)

        versioned = store.read_work_request(wr.id)
        assert versioned.version == 1
        assert versioned.entity.estimated_total_cost == Decimal("1200.50")
        assert versioned.entity.created_at == clock.now()

    def test_read_unknown_returns_none(self, store):
        assert store.read_work_request(uuid4()) is None

    def test_cas_bumps_version_by_one(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)

        result = store.compare_and_swap_work_request(wr.id, 1, {"title": "Inspect belt 3"})

        assert result == CasOk(new_version=2)
        assert store.read_work_request(wr.id).entity.title == "Inspect belt 3"

    def test_stale_version_is_a_conflict_not_a_merge(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        store.compare_and_swap_work_request(wr.id, 1, {"title": "first writer"})

        result = store.compare_and_swap_work_request(wr.id, 1, {"title": "second writer"})

        assert result == VersionConflict(expected_version=1, actual_version=2)
        current = store.read_work_request(wr.id)
        assert current.entity.title == "first writer"
        assert current.version == 2

    def test_conflict_on_missing_row_has_no_actual_version(self, store):
        result = store.compare_and_swap_work_request(uuid4(), 1, {"title": "x"})
        assert result == VersionConflict(expected_version=1, actual_version=None)

    def test_patch_cannot_write_version(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        with pytest.raises(ValueError):
            store.compare_and_swap_work_request(wr.id, 1, {"version": 9})

    def test_history_written_with_cas(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        entry = StatusHistoryEntry(
            work_request_id=wr.id,
            from_status=WorkRequestStatus.DRAFT,
            to_status=WorkRequestStatus.SUBMITTED,
            changed_by="requestor",
            changed_at=clock.now(),
            version=2,
        )

        store.compare_and_swap_work_request(
            wr.id, 1, {"status": WorkRequestStatus.SUBMITTED}, history=entry,
        )

        assert store.list_status_history(wr.id) == [entry]

    def test_conflicting_cas_writes_no_history(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        entry = StatusHistoryEntry(
            work_request_id=wr.id,
            from_status=WorkRequestStatus.DRAFT,
            to_status=WorkRequestStatus.CANCELLED,
            changed_by="requestor",
            changed_at=clock.now(),
            version=6,
            reason="stale",
        )

        store.compare_and_swap_work_request(
            wr.id, 5, {"status": WorkRequestStatus.CANCELLED}, history=entry,
        )

        assert store.list_status_history(wr.id) == []


class TestAppendOnlyRows:
    def test_status_history_cannot_be_updated(self, store, session_factory, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        store.compare_and_swap_work_request(
            wr.id, 1, {"status": WorkRequestStatus.SUBMITTED},
            history=StatusHistoryEntry(
                wr.id, WorkRequestStatus.DRAFT, WorkRequestStatus.SUBMITTED,
                "requestor", clock.now(), 2,
            ),
        )

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                row = session.scalars(select(StatusHistoryModel)).one()
                row.changed_by = "someone-else"

    def test_work_request_cannot_be_physically_deleted(self, store, session_factory, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.delete(session.get(WorkRequestModel, wr.id))

        assert store.read_work_request(wr.id) is not None

    def test_decision_record_cannot_be_deleted(self, store, session_factory, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        chain = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())
        step = chain.steps[0]
        store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {"status": ApprovalStepStatus.APPROVED},
            decision=ApprovalDecisionRecord(
                decision_id=uuid4(),
                step_id=step.step_id,
                work_request_id=wr.id,
                actor_id="supervisor",
                decision=ApprovalDecision.APPROVE,
                decided_at=clock.now(),
            ),
        )

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.delete(session.scalars(select(ApprovalDecisionModel)).one())


class TestChains:
    def test_chain_persisted_with_pending_steps(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)

        chain = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())

        assert [s.position for s in chain.steps] == [1, 2]
        assert all(s.status == ApprovalStepStatus.PENDING for s in chain.steps)
        assert chain.steps[0].due_at == clock.now() + timedelta(hours=24)
        assert chain.steps[1].due_at is None
        assert chain.fingerprint == two_step_plan().fingerprint
        assert store.read_latest_chain(wr.id) == chain

    def test_second_chain_for_same_submission_rejected(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())

        with pytest.raises(OptimisticLockError):
            store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())

    def test_latest_chain_is_highest_submission(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())
        second = store.create_chain(wr.id, "org-1", 2, two_step_plan(), clock.now())

        assert store.read_latest_chain(wr.id).chain_id == second.chain_id

    def test_step_accepts_one_terminal_decision(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        step = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now()).steps[0]

        first = store.compare_and_swap_step(
            step.step_id, ApprovalStepStatus.PENDING, {"status": ApprovalStepStatus.APPROVED},
        )
        second = store.compare_and_swap_step(
            step.step_id, ApprovalStepStatus.PENDING, {"status": ApprovalStepStatus.REJECTED},
        )

        assert first == StepCasOk(step_id=step.step_id)
        assert second == StepConflict(
            step_id=step.step_id, actual_status="approved", actual_owner="supervisor",
        )

    def test_step_write_requires_expected_owner(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        step = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now()).steps[0]

        delegated = store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {"delegated_to": "deputy-a", "delegated_from": "supervisor"},
            expected_owner="supervisor",
        )
        repeated = store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {"delegated_to": "deputy-b", "delegated_from": "supervisor"},
            expected_owner="supervisor",
        )

        assert delegated == StepCasOk(step_id=step.step_id)
        assert repeated == StepConflict(
            step_id=step.step_id, actual_status="pending", actual_owner="deputy-a",
        )
        assert store.read_latest_chain(wr.id).steps[0].owner_id == "deputy-a"

    def test_expected_owner_matches_delegate(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        step = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now()).steps[0]
        store.compare_and_swap_step(
            step.step_id, ApprovalStepStatus.PENDING, {"delegated_to": "deputy-a"},
        )

        result = store.compare_and_swap_step(
            step.step_id,
            ApprovalStepStatus.PENDING,
            {"status": ApprovalStepStatus.APPROVED},
            expected_owner="deputy-a",
        )

        assert result == StepCasOk(step_id=step.step_id)

    def test_freeze_moots_pending_steps(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        chain = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())

        mooted = store.freeze_chain(chain.chain_id)

        frozen = store.read_latest_chain(wr.id)
        assert set(mooted) == {s.step_id for s in chain.steps}
        assert frozen.is_frozen
        assert frozen.current_step is None
        assert {s.status for s in frozen.steps} == {ApprovalStepStatus.MOOT}

    def test_delete_chain_removes_steps(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)
        chain = store.create_chain(wr.id, "org-1", 1, two_step_plan(), clock.now())

        store.delete_chain(chain.chain_id)

        assert store.read_latest_chain(wr.id) is None


class TestReconciliation:
    def test_records_listed_until_resolved(self, store, clock):
        wr = new_request(clock)
        store.insert_work_request(wr)

        record = store.record_reconciliation(
            wr.id, "rollback_submit_to_draft", "lock timeout", clock.now(),
        )

        assert record.resolved is False
        assert store.list_reconciliation_records() == [record]


class TestStorageFailures:
    def test_operational_error_becomes_storage_unavailable(self):
        class BrokenSession:
            def get(self, *args, **kwargs):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

            def commit(self):
                pass

            def rollback(self):
                pass

            def close(self):
                pass

        store = SqlAlchemyVersionedStore(lambda: BrokenSession())

        with pytest.raises(StorageUnavailable) as exc_info:
            store.read_work_request(uuid4())
        assert exc_info.value.operation == "read_work_request"
        assert "database is locked" in exc_info.value.detail
