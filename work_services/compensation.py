"""
work_services.compensation -- Explicit, logged, retried compensating actions.

Responsibility:
    Repair a multi-write operation after a partial commit: undo the earlier
    write (submit rollback) or finish the later one (status advance after a
    committed approval decision).  A ``CompensationStep`` names the
    action, runs it, logs every attempt, retries transient failures with a
    fixed backoff and reports the result as a ``CompensationOutcome``.

Architecture position:
    Services layer.  Has no knowledge of what the action does; the
    lifecycle service and the approval workflow engine supply it.

Invariants enforced:
    - Retries only on OptimisticLockError and StorageUnavailable.  Any other
      error ends the step at once.
    - ``run`` never raises; the caller decides what a failed compensation
      means (a reconciliation record, for both callers).
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from work_kernel.exceptions import (
    CompensationFailedError,
    OptimisticLockError,
    StorageUnavailable,
)
from work_kernel.logging_config import get_logger

logger = get_logger("services.compensation")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (OptimisticLockError, StorageUnavailable)


@dataclass(frozen=True)
class CompensationOutcome:
    step_name: str
    succeeded: bool
    attempts: int
    error: CompensationFailedError | None = None


class CompensationStep:
    """
    One compensating action of a saga.

    Args:
        name: Stable identifier used in logs and reconciliation records.
        action: Zero-argument callable performing the compensation.  It
            must be idempotent: it may run more than once.
        max_attempts: Total attempts including the first.
        backoff_seconds: Sleep between attempts.
        sleep: Injectable for tests.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], None],
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.name = name
        self._action = action
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    def run(self, work_request_id: UUID) -> CompensationOutcome:
        last_error: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            logger.info(
                "compensation_attempt",
                extra={
                    "step_name": self.name,
                    "work_request_id": str(work_request_id),
                    "attempt": attempt,
                    "max_attempts": self._max_attempts,
                },
            )
            try:
                self._action()
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "compensation_attempt_failed",
                    extra={
                        "step_name": self.name,
                        "work_request_id": str(work_request_id),
                        "attempt": attempt,
                        "error": str(e),
                        "retryable": True,
                    },
                )
                if attempt < self._max_attempts and self._backoff_seconds > 0:
                    self._sleep(self._backoff_seconds)
                continue
            except Exception as e:  # noqa: BLE001
                logger.error(
                    "compensation_attempt_failed",
                    extra={
                        "step_name": self.name,
                        "work_request_id": str(work_request_id),
                        "attempt": attempt,
                        "error": str(e),
                        "retryable": False,
                    },
                )
                return self._failed(work_request_id, attempt, e)

            logger.info(
                "compensation_succeeded",
                extra={
                    "step_name": self.name,
                    "work_request_id": str(work_request_id),
                    "attempts": attempt,
                },
            )
            return CompensationOutcome(self.name, True, attempt)

        logger.error(
            "compensation_exhausted",
            extra={
                "step_name": self.name,
                "work_request_id": str(work_request_id),
                "attempts": self._max_attempts,
                "error": str(last_error),
            },
        )
        return self._failed(work_request_id, self._max_attempts, last_error)

    def _failed(
        self,
        work_request_id: UUID,
        attempts: int,
        cause: Exception | None,
    ) -> CompensationOutcome:
        error = CompensationFailedError(self.name, str(work_request_id), attempts, cause)
        return CompensationOutcome(self.name, False, attempts, error)
