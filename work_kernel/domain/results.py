"""
Result types returned across the service boundary.

Service operations never raise kernel errors at their callers.  They return
a ``Result`` holding either a value or a typed ``WorkKernelError``; the
store's compare-and-swap returns ``CasOk`` or ``VersionConflict`` so that
the conflict path cannot be forgotten.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar
from uuid import UUID

from work_kernel.domain.approval import ApprovalChain
from work_kernel.domain.work_request import WorkRequest
from work_kernel.exceptions import WorkKernelError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either ``value`` (success) or ``error`` (typed failure)."""

    value: T | None = None
    error: WorkKernelError | None = None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, error: WorkKernelError) -> Result[T]:
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


# =========================================================================
# Compare-and-swap
# =========================================================================


@dataclass(frozen=True)
class CasOk:
    """The write applied; ``new_version`` is the version now stored."""

    new_version: int


@dataclass(frozen=True)
class VersionConflict:
    """The stored version did not match ``expected_version``.

    ``actual_version`` is None when the row no longer exists.
    """

    expected_version: int
    actual_version: int | None


CasResult = CasOk | VersionConflict


@dataclass(frozen=True)
class StepCasOk:
    """A step status write applied."""

    step_id: UUID


@dataclass(frozen=True)
class StepConflict:
    """The step was not in the expected status, or no longer had the
    expected owner, when the write landed."""

    step_id: UUID
    actual_status: str | None
    actual_owner: str | None = None


StepCasResult = StepCasOk | StepConflict


# =========================================================================
# Operation results
# =========================================================================


@dataclass(frozen=True)
class SubmitReceipt:
    """Successful submission: the request, its new chain, and an ETA."""

    work_request: WorkRequest
    chain: ApprovalChain
    estimated_approval_hours: int


@dataclass(frozen=True)
class BulkFailure:
    id: UUID
    error: WorkKernelError


@dataclass(frozen=True)
class BulkResult:
    """Per-item outcome of a bulk operation.

    ``processed_count`` counts items that succeeded.
    """

    processed_count: int = 0
    failures: tuple[BulkFailure, ...] = field(default_factory=tuple)
    succeeded_ids: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def failed_ids(self) -> tuple[UUID, ...]:
        return tuple(f.id for f in self.failures)
