"""Read-only query helpers."""

from procure_kernel.selectors.budget_selector import BudgetSelector, BudgetSummary
from procure_kernel.selectors.requisition_selector import (
    HeadApprovalStats,
    RequisitionSelector,
)

__all__ = [
    "BudgetSelector",
    "BudgetSummary",
    "HeadApprovalStats",
    "RequisitionSelector",
]
