"""
work_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines in
    ``work_engines`` with the ``VersionedEntityStore`` and the injected
    outbound collaborators.  This is the only layer that reads the clock
    for business timestamps or talks to the store.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

        work_services/ -> work_engines/  (allowed)
        work_services/ -> work_kernel/   (allowed)
        work_engines/  -> work_services/ (FORBIDDEN)
        work_kernel/   -> work_services/ (FORBIDDEN)
"""

from work_services.approval_workflow import ApprovalWorkflowEngine
from work_services.compensation import CompensationOutcome, CompensationStep
from work_services.lifecycle import WorkRequestLifecycleService
from work_services.notifications import OutboundEffects
from work_services.orchestrator import WorkflowOrchestrator

__all__ = [
    "ApprovalWorkflowEngine",
    "CompensationOutcome",
    "CompensationStep",
    "OutboundEffects",
    "WorkRequestLifecycleService",
    "WorkflowOrchestrator",
]
