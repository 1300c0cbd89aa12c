"""
work_services.notifications -- Fire-and-forget outbound side effects.

Responsibility:
    Wrap the injected ``NotificationDispatcher`` and ``CacheInvalidator`` so
    that a failure in either is logged and dropped.  A transition that has
    committed is never failed or rolled back by what happens here.

Architecture position:
    Services layer.  Imports work_kernel.domain.events only.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from work_kernel.domain.events import (
    CacheInvalidator,
    NotificationDispatcher,
    NotificationEventType,
    NullCacheInvalidator,
    NullNotificationDispatcher,
    work_request_cache_key,
)
from work_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class OutboundEffects:
    """Dispatches notifications and cache invalidations, swallowing failures."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher | None = None,
        cache: CacheInvalidator | None = None,
    ):
        self._dispatcher = dispatcher or NullNotificationDispatcher()
        self._cache = cache or NullCacheInvalidator()

    def notify(
        self,
        event_type: NotificationEventType,
        work_request_id: UUID,
        context: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._dispatcher.notify(event_type, work_request_id, dict(context or {}))
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "notification_dispatch_failed",
                extra={
                    "event_type": event_type.value,
                    "work_request_id": str(work_request_id),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    def invalidate(self, work_request_id: UUID) -> None:
        key = work_request_cache_key(work_request_id)
        try:
            self._cache.invalidate(key)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "cache_invalidation_failed",
                extra={"cache_key": key, "error": str(e)},
            )
