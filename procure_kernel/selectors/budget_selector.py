"""
Module: procure_kernel.selectors.budget_selector
Responsibility: Read-only budget code queries: a single code's position,
    the codes a department may charge, and codes close to exhaustion.
Architecture position: Kernel > Selectors.  Read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from procure_kernel.db.types import ZERO
from procure_kernel.domain.budget import (
    GENERAL_DEPARTMENT,
    AlertLevel,
    Allocation,
    AllocationStatus,
    BudgetCode,
    BudgetHistoryEntry,
    UtilizationBand,
    alert_level,
    utilization_band,
)
from procure_kernel.exceptions import BudgetCodeNotFoundError
from procure_kernel.models.budget_code import (
    BudgetAllocationModel,
    BudgetCodeModel,
    BudgetHistoryModel,
)
from procure_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class BudgetSummary:
    """A budget code with its derived figures."""

    budget_code: BudgetCode
    remaining: Decimal
    utilization_percentage: Decimal
    alert_level: AlertLevel
    utilization_band: UtilizationBand
    active_reservations: int
    history: tuple[BudgetHistoryEntry, ...] = ()


class BudgetSelector(BaseSelector[BudgetCodeModel]):
    """Read-only queries over budget codes and their allocations."""

    def _summarize(
        self,
        model: BudgetCodeModel,
        with_history: bool = False,
    ) -> BudgetSummary:
        dto = model.to_dto()
        active = self.session.execute(
            select(func.count(BudgetAllocationModel.id)).where(
                BudgetAllocationModel.budget_code_id == model.id,
                BudgetAllocationModel.status == AllocationStatus.ALLOCATED.value,
            )
        ).scalar_one()
        history = ()
        if with_history:
            history = tuple(entry.to_dto() for entry in model.history)
        return BudgetSummary(
            budget_code=dto,
            remaining=dto.remaining,
            utilization_percentage=dto.utilization_percentage,
            alert_level=alert_level(dto.utilization_percentage),
            utilization_band=utilization_band(dto.utilization_percentage),
            active_reservations=active,
            history=history,
        )

    def summary(self, budget_code_id: UUID) -> BudgetSummary:
        model = self.session.get(BudgetCodeModel, budget_code_id)
        if model is None:
            raise BudgetCodeNotFoundError(str(budget_code_id))
        return self._summarize(model, with_history=True)

    def by_code(self, code: str) -> BudgetCode | None:
        model = self.session.execute(
            select(BudgetCodeModel).where(BudgetCodeModel.code == code.strip().upper())
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def available_for_department(self, department: str) -> list[BudgetSummary]:
        """
        Active codes a department may charge, lowest utilization first.

        A department sees its own codes plus the ``General`` ones.  Codes
        with nothing remaining are left out.
        """
        departments = {department, GENERAL_DEPARTMENT}
        models = self.session.execute(
            select(BudgetCodeModel).where(
                BudgetCodeModel.active.is_(True),
                BudgetCodeModel.department.in_(departments),
            )
        ).scalars().all()

        summaries = [self._summarize(m) for m in models]
        summaries = [s for s in summaries if s.remaining > ZERO]
        summaries.sort(key=lambda s: (s.utilization_percentage, s.budget_code.code))
        return summaries

    def requiring_attention(
        self,
        threshold: Decimal = Decimal("75"),
    ) -> list[BudgetSummary]:
        """Active codes at or above ``threshold`` percent utilization, worst first."""
        models = self.session.execute(
            select(BudgetCodeModel).where(BudgetCodeModel.active.is_(True))
        ).scalars().all()

        flagged = [
            self._summarize(m)
            for m in models
            if m.to_dto().utilization_percentage >= threshold
        ]
        flagged.sort(key=lambda s: (-s.utilization_percentage, s.budget_code.code))
        return flagged

    def allocations_for(self, budget_code_id: UUID) -> list[Allocation]:
        return [
            m.to_dto()
            for m in self.session.execute(
                select(BudgetAllocationModel)
                .where(BudgetAllocationModel.budget_code_id == budget_code_id)
                .order_by(BudgetAllocationModel.allocated_at)
            ).scalars().all()
        ]

    def history(self, budget_code_id: UUID) -> list[BudgetHistoryEntry]:
        return [
            m.to_dto()
            for m in self.session.execute(
                select(BudgetHistoryModel)
                .where(BudgetHistoryModel.budget_code_id == budget_code_id)
                .order_by(BudgetHistoryModel.changed_at)
            ).scalars().all()
        ]
