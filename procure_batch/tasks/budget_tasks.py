"""
Batch tasks: budget ledger maintenance (stale reservation sweep).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from procure_batch.domain.types import BatchItemStatus
from procure_batch.tasks.base import BatchItemInput, BatchTaskResult
from procure_kernel.domain.clock import DeterministicClock
from procure_kernel.exceptions import ProcureKernelError
from procure_kernel.services.budget_ledger import BudgetLedgerService

DEFAULT_MAX_AGE_DAYS = 30


class ReleaseStaleReservationsTask:
    """Releases reservations older than ``max_age_days``, one budget code per item."""

    def __init__(self, default_max_age_days: int = DEFAULT_MAX_AGE_DAYS):
        self._default_max_age_days = default_max_age_days

    @property
    def task_type(self) -> str:
        return "budget.release_stale_reservations"

    @property
    def description(self) -> str:
        return "Release budget reservations that were never committed"

    def _max_age(self, parameters: dict[str, Any]) -> int:
        return int(parameters.get("max_age_days", self._default_max_age_days))

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        ledger = BudgetLedgerService(session, DeterministicClock(as_of))
        code_ids = ledger.codes_with_stale_reservations(self._max_age(parameters))
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(code_id),
                payload={"budget_code_id": str(code_id)},
            )
            for i, code_id in enumerate(code_ids)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        ledger = BudgetLedgerService(session, DeterministicClock(as_of))
        try:
            result = ledger.release_stale_for_code(
                UUID(item.payload["budget_code_id"]), self._max_age(parameters),
            )
        except ProcureKernelError as exc:
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code=exc.code,
                error_message=str(exc),
            )

        if result.count == 0:
            # Another sweep got here first.
            return BatchTaskResult(status=BatchItemStatus.SKIPPED)
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={
                "budget_codes": list(result.budget_codes),
                "released_count": result.count,
                "released_amount": str(result.amount),
            },
        )
