"""
Pytest fixtures for the work request workflow test suite.

Provides:
- A file-backed SQLite database per test (threads share it through the
  engine's connection pool, so concurrency tests exercise real locking)
- A deterministic clock
- Recording notification and cache collaborators
- Store, approval workflow and lifecycle service fixtures
- Structured log capture
"""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from work_kernel.db.engine import build_engine, create_tables
from work_kernel.domain.approval import ChainPolicy
from work_kernel.domain.clock import DeterministicClock
from work_kernel.domain.work_request import (
    CreateWorkRequestCommand,
    ImpactLevel,
    Priority,
    SubmitContext,
    Urgency,
    WorkType,
)
from work_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from work_kernel.store.sqlalchemy_store import SqlAlchemyVersionedStore
from work_services.approval_workflow import ApprovalWorkflowEngine
from work_services.lifecycle import WorkRequestLifecycleService
from work_services.notifications import OutboundEffects

TEST_ORG = "org-1"
REQUESTOR = "requestor-1"
SUPERVISOR = "maintenance-supervisor"
MANAGER = "maintenance-manager"
OPS_LEAD = "operations-lead"
FINANCE = "finance-controller"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture work_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle):
            lifecycle.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "work_request_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("work_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Outbound collaborators
# =============================================================================


class RecordingDispatcher:
    """NotificationDispatcher that keeps every call."""

    def __init__(self):
        self.events = []

    def notify(self, event_type, work_request_id, context):
        self.events.append((event_type, work_request_id, dict(context)))

    def of_type(self, event_type):
        return [e for e in self.events if e[0] == event_type]


class RecordingCache:
    def __init__(self):
        self.keys = []

    def invalidate(self, key):
        self.keys.append(key)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def effects(dispatcher, cache):
    return OutboundEffects(dispatcher, cache)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'work_requests.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return SqlAlchemyVersionedStore(session_factory)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def policy():
    return ChainPolicy(
        review_approvers=(SUPERVISOR, MANAGER),
        operations_lead_id=OPS_LEAD,
        finance_approver_id=FINANCE,
        finance_threshold=Decimal("10000"),
    )


@pytest.fixture
def workflow(store, policy, clock, effects):
    return ApprovalWorkflowEngine(
        store, policy, clock=clock, effects=effects, advance_backoff_seconds=0,
    )


@pytest.fixture
def lifecycle(store, workflow, clock, effects):
    return WorkRequestLifecycleService(
        store,
        workflow,
        clock=clock,
        effects=effects,
        compensation_backoff_seconds=0,
    )


def make_command(
    title: str = "Replace stand 12 lighting",
    priority: Priority = Priority.MEDIUM,
    estimated_total_cost: Decimal | None = Decimal("2500"),
    impact_level: ImpactLevel = ImpactLevel.NONE,
    work_type: WorkType = WorkType.MAINTENANCE,
    urgency: Urgency = Urgency.ROUTINE,
    organization_id: str = TEST_ORG,
    requested_by: str = REQUESTOR,
) -> CreateWorkRequestCommand:
    return CreateWorkRequestCommand(
        organization_id=organization_id,
        requested_by=requested_by,
        title=title,
        priority=priority,
        urgency=urgency,
        impact_level=impact_level,
        work_type=work_type,
        asset_id="stand-12",
        estimated_total_cost=estimated_total_cost,
    )


@pytest.fixture
def command_factory():
    return make_command


@pytest.fixture
def submitted_request(lifecycle):
    """Create a draft and submit it; returns the SubmitReceipt."""

    def _submit(**command_fields):
        draft = lifecycle.create_draft(make_command(**command_fields))
        result = lifecycle.submit(
            draft.id,
            SubmitContext(user_id=REQUESTOR, organization_id=draft.organization_id),
        )
        assert result.is_ok, result.error
        return result.value

    return _submit
