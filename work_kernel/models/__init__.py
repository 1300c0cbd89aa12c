"""SQLAlchemy ORM models. Importing this package registers every table."""

from work_kernel.models.approval import (
    ApprovalChainModel,
    ApprovalDecisionModel,
    ApprovalStepModel,
    DelegationModel,
)
from work_kernel.models.reconciliation import ReconciliationRecordModel
from work_kernel.models.work_request import StatusHistoryModel, WorkRequestModel

__all__ = [
    "WorkRequestModel",
    "StatusHistoryModel",
    "ApprovalChainModel",
    "ApprovalStepModel",
    "ApprovalDecisionModel",
    "DelegationModel",
    "ReconciliationRecordModel",
]
