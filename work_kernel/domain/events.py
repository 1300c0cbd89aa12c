"""
Outbound collaborator interfaces (``work_kernel.domain.events``).

Notification delivery and cache invalidation live outside the kernel.  The
services receive implementations of these Protocols at construction time;
nothing is registered globally.  Both sinks are fire-and-forget: the
services ignore their return values and a failure in either never fails or
rolls back a state transition.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


class NotificationEventType(str, Enum):
    """Events the lifecycle and approval services publish."""

    STATUS_CHANGED = "status_changed"
    WORK_REQUEST_SUBMITTED = "work_request_submitted"
    APPROVAL_STEP_ACTIVATED = "approval_step_activated"
    APPROVAL_DECISION_RECORDED = "approval_decision_recorded"
    APPROVAL_DELEGATED = "approval_delegated"
    WORK_REQUEST_DELETED = "work_request_deleted"
    RECONCILIATION_REQUIRED = "reconciliation_required"


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Sink for transition and decision events."""

    def notify(
        self,
        event_type: NotificationEventType,
        work_request_id: UUID,
        context: dict[str, Any],
    ) -> Any:
        ...


@runtime_checkable
class CacheInvalidator(Protocol):
    """External cache that must drop entries for a changed work request."""

    def invalidate(self, key: str) -> Any:
        ...


class NullNotificationDispatcher:
    """Dispatcher that drops every event."""

    def notify(
        self,
        event_type: NotificationEventType,
        work_request_id: UUID,
        context: dict[str, Any],
    ) -> None:
        return None


class NullCacheInvalidator:
    """Invalidator with no cache behind it."""

    def invalidate(self, key: str) -> None:
        return None


def work_request_cache_key(work_request_id: UUID) -> str:
    return f"work_request:{work_request_id}"
