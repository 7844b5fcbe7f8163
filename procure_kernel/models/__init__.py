"""ORM models for the procure kernel."""

from procure_kernel.models.budget_code import (
    BudgetAllocationModel,
    BudgetCodeModel,
    BudgetHistoryModel,
)
from procure_kernel.models.outbox import OutboxEventModel
from procure_kernel.models.requisition import (
    ApprovalStepModel,
    ClarificationRecordModel,
    PettyCashFormModel,
    RejectionRecordModel,
    RequisitionItemModel,
    RequisitionModel,
)
from procure_kernel.models.sequence import SequenceCounter

__all__ = [
    "ApprovalStepModel",
    "BudgetAllocationModel",
    "BudgetCodeModel",
    "BudgetHistoryModel",
    "ClarificationRecordModel",
    "OutboxEventModel",
    "PettyCashFormModel",
    "RejectionRecordModel",
    "RequisitionItemModel",
    "RequisitionModel",
    "SequenceCounter",
]
