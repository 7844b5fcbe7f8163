"""Services for the procure kernel (write side)."""

from procure_kernel.services.budget_ledger import BudgetLedgerService
from procure_kernel.services.notification_dispatcher import (
    DispatchResult,
    NotificationDispatcher,
    OutboxWriter,
)
from procure_kernel.services.petty_cash import PettyCashService
from procure_kernel.services.requisition_workflow import RequisitionWorkflowService
from procure_kernel.services.sequence_service import SequenceService

__all__ = [
    "BudgetLedgerService",
    "DispatchResult",
    "NotificationDispatcher",
    "OutboxWriter",
    "PettyCashService",
    "RequisitionWorkflowService",
    "SequenceService",
]
