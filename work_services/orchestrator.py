"""
work_services.orchestrator -- Central wiring for the workflow services.

Responsibility:
    Constructs the store, the outbound effects, the approval workflow
    engine and the lifecycle service exactly once, sharing one clock and
    one set of outbound effects between them.

Architecture position:
    Services -- top of the service layer.  The only place where the
    services are composed; no service constructs another.

Usage:
    from work_config import get_active_config
    from work_kernel.db import init_engine_from_url, get_session_factory

    settings = get_active_config()
    init_engine_from_url(settings.database.url)
    services = WorkflowOrchestrator.from_settings(
        settings, get_session_factory(), dispatcher=my_dispatcher,
    )
    services.lifecycle.submit(wr_id, ctx)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session, sessionmaker

from work_kernel.domain.approval import ChainPolicy
from work_kernel.domain.clock import Clock, SystemClock
from work_kernel.domain.events import CacheInvalidator, NotificationDispatcher
from work_kernel.logging_config import configure_logging, get_logger
from work_kernel.store.protocol import VersionedEntityStore
from work_kernel.store.sqlalchemy_store import SqlAlchemyVersionedStore
from work_services.approval_workflow import ApprovalWorkflowEngine
from work_services.lifecycle import WorkRequestLifecycleService
from work_services.notifications import OutboundEffects

if TYPE_CHECKING:
    from work_config.schema import WorkflowSettings

logger = get_logger("services.orchestrator")


class WorkflowOrchestrator:
    """Holds one instance of every workflow service."""

    def __init__(
        self,
        store: VersionedEntityStore,
        policy: ChainPolicy,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        cache: CacheInvalidator | None = None,
        bulk_max_workers: int = 8,
        compensation_max_attempts: int = 3,
        compensation_backoff_seconds: float = 0.05,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.effects = OutboundEffects(dispatcher, cache)
        self.workflow = ApprovalWorkflowEngine(
            store,
            policy,
            clock=self.clock,
            effects=self.effects,
            advance_max_attempts=compensation_max_attempts,
            advance_backoff_seconds=compensation_backoff_seconds,
        )
        self.lifecycle = WorkRequestLifecycleService(
            store,
            self.workflow,
            clock=self.clock,
            effects=self.effects,
            bulk_max_workers=bulk_max_workers,
            compensation_max_attempts=compensation_max_attempts,
            compensation_backoff_seconds=compensation_backoff_seconds,
        )
        logger.info(
            "workflow_services_wired",
            extra={
                "store": type(store).__name__,
                "bulk_max_workers": bulk_max_workers,
                "finance_threshold": str(policy.finance_threshold),
            },
        )

    @classmethod
    def from_settings(
        cls,
        settings: WorkflowSettings,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        cache: CacheInvalidator | None = None,
    ) -> WorkflowOrchestrator:
        """Wire the services from loaded settings and install JSON logging
        at the configured level (no-op when logging is already configured)."""
        configure_logging(level=settings.logging.level)
        lifecycle = settings.lifecycle
        return cls(
            SqlAlchemyVersionedStore(session_factory),
            settings.approval,
            clock=clock,
            dispatcher=dispatcher,
            cache=cache,
            bulk_max_workers=lifecycle.bulk_max_workers,
            compensation_max_attempts=lifecycle.compensation_max_attempts,
            compensation_backoff_seconds=lifecycle.compensation_backoff_seconds,
        )
