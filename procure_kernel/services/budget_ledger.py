"""
BudgetLedgerService -- reservations, commitments and releases on budget codes.

Responsibility:
    The only writer of budget-code figures.  Every operation locks the
    budget code row, asks the pure ``BudgetPosition`` whether the move is
    legal, applies it to the row and its allocation, and flushes.

Architecture position:
    Kernel > Services.  Flush-only; the caller owns the transaction.  The
    workflow service calls ``reserve`` inside the same unit of work as the
    finance-verification status change, so both commit or neither does.

Invariants enforced:
    - ``used + reserved <= total`` after every operation.
    - ``reserved`` equals the sum of the code's ``allocated`` allocations.
    - Allocation status moves only allocated -> consumed | released.
    - Concurrent reservations on one code are serialized: FOR UPDATE on
      PostgreSQL, BEGIN IMMEDIATE on SQLite, plus the row's version column.
      Two reservations that jointly exceed headroom yield exactly one
      success and one ``InsufficientBudgetError``.

Failure modes:
    - InsufficientBudgetError, ReservationNotFoundError,
      DuplicateReservationError, BudgetCodeNotFoundError,
      BudgetCodeInactiveError, DuplicateBudgetCodeError, ValidationError.
    - StaleStateError if a concurrent writer bumped the code's version.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from procure_kernel.db.types import ZERO, require_positive, to_money
from procure_kernel.domain.budget import (
    GENERAL_DEPARTMENT,
    Allocation,
    AllocationStatus,
    BudgetCode,
    BudgetPeriod,
    BudgetPosition,
    BudgetType,
    StaleReleaseResult,
    normalize_budget_code,
    period_end_date,
    validate_budget_name,
)
from procure_kernel.domain.clock import Clock
from procure_kernel.exceptions import (
    BudgetCodeInactiveError,
    BudgetCodeNotFoundError,
    DuplicateBudgetCodeError,
    DuplicateReservationError,
    ReservationNotFoundError,
    ValidationError,
)
from procure_kernel.logging_config import LogContext, get_logger
from procure_kernel.models.budget_code import (
    BudgetAllocationModel,
    BudgetCodeModel,
    BudgetHistoryModel,
)
from procure_kernel.services.base import BaseService

logger = get_logger("services.budget_ledger")

STALE_RELEASE_REASON = "stale_reservation"


class BudgetLedgerService(BaseService[BudgetCodeModel]):
    """
    Budget reservation ledger.

    Usage:
        ledger = BudgetLedgerService(session, clock)
        reservation_id = ledger.reserve(code_id, Decimal("600000"), requisition_id)
        session.commit()
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session, clock)

    # =========================================================================
    # Loading and locking
    # =========================================================================

    def _lock_code(self, budget_code_id: UUID) -> BudgetCodeModel:
        model = self.session.execute(
            select(BudgetCodeModel)
            .where(BudgetCodeModel.id == budget_code_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise BudgetCodeNotFoundError(str(budget_code_id))
        return model

    def _lock_allocation(
        self, reservation_id: UUID,
    ) -> tuple[BudgetAllocationModel, BudgetCodeModel]:
        budget_code_id = self.session.execute(
            select(BudgetAllocationModel.budget_code_id)
            .where(BudgetAllocationModel.id == reservation_id)
        ).scalar_one_or_none()
        if budget_code_id is None:
            raise ReservationNotFoundError(str(reservation_id))

        # Code first, then allocation: one lock order everywhere.
        code = self._lock_code(budget_code_id)
        allocation = self.session.execute(
            select(BudgetAllocationModel)
            .where(BudgetAllocationModel.id == reservation_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        return allocation, code

    @staticmethod
    def _position(code: BudgetCodeModel) -> BudgetPosition:
        return BudgetPosition(code.total_budget, code.used, code.reserved)

    @staticmethod
    def _apply(code: BudgetCodeModel, position: BudgetPosition) -> None:
        code.total_budget = position.total
        code.used = position.used
        code.reserved = position.reserved

    # =========================================================================
    # Budget code administration
    # =========================================================================

    def create_budget_code(
        self,
        code: str,
        name: str,
        department: str,
        total_budget: Decimal,
        actor_id: UUID,
        budget_type: BudgetType = BudgetType.DEPARTMENTAL,
        budget_period: BudgetPeriod = BudgetPeriod.YEARLY,
        start_date: date | None = None,
        end_date: date | None = None,
        budget_owner: str | None = None,
        description: str | None = None,
    ) -> BudgetCode:
        normalized = normalize_budget_code(code)
        total = to_money(total_budget, "total_budget")
        if total < ZERO:
            raise ValidationError("total_budget", "cannot be negative")

        existing = self.session.execute(
            select(BudgetCodeModel.id).where(BudgetCodeModel.code == normalized)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateBudgetCodeError(normalized)

        period = BudgetPeriod(budget_period)
        start = start_date or self.clock.now().date()
        end = end_date or period_end_date(period, start)
        if end is not None and end < start:
            raise ValidationError("end_date", "must not be before start_date")

        model = BudgetCodeModel(
            code=normalized,
            name=validate_budget_name(name),
            description=description,
            department=(department or GENERAL_DEPARTMENT).strip(),
            budget_type=BudgetType(budget_type).value,
            budget_period=period.value,
            budget_owner=budget_owner,
            total_budget=total,
            used=ZERO,
            reserved=ZERO,
            active=True,
            start_date=start,
            end_date=end,
            created_by_id=actor_id,
        )
        self.session.add(model)
        self.flush("BudgetCode", normalized)

        logger.info(
            "budget_code_created",
            extra={
                "budget_code": normalized,
                "department": model.department,
                "total_budget": str(total),
                "budget_period": period.value,
            },
        )
        return model.to_dto()

    def update_budget(
        self,
        budget_code_id: UUID,
        new_total: Decimal,
        reason: str,
        actor_id: UUID,
    ) -> BudgetCode:
        """Change a code's total, recording who, why and the previous figure."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "a reason is required to change a budget")
        total = to_money(new_total, "total_budget")

        code = self._lock_code(budget_code_id)
        previous = code.total_budget
        self._apply(code, self._position(code).with_total(total))
        code.updated_by_id = actor_id
        self.session.add(
            BudgetHistoryModel(
                budget_code_id=code.id,
                previous_total=previous,
                new_total=total,
                reason=reason.strip(),
                changed_by_id=actor_id,
                changed_at=self.clock.now(),
            )
        )
        self.flush("BudgetCode", code.code)

        logger.info(
            "budget_total_changed",
            extra={
                "budget_code": code.code,
                "previous_total": str(previous),
                "new_total": str(total),
                "reason": reason.strip(),
            },
        )
        return code.to_dto()

    def deactivate(self, budget_code_id: UUID, actor_id: UUID) -> BudgetCode:
        """Archive a code. Existing reservations stay until released or committed."""
        code = self._lock_code(budget_code_id)
        code.active = False
        code.updated_by_id = actor_id
        self.flush("BudgetCode", code.code)
        logger.info("budget_code_deactivated", extra={"budget_code": code.code})
        return code.to_dto()

    # =========================================================================
    # Ledger operations
    # =========================================================================

    def reserve(
        self,
        budget_code_id: UUID,
        amount: Decimal,
        requisition_id: UUID,
    ) -> UUID:
        """
        Hold ``amount`` on the code for a requisition.

        Returns:
            The reservation id.

        Raises:
            InsufficientBudgetError: remaining < amount.
            DuplicateReservationError: the requisition already holds one.
            BudgetCodeInactiveError: the code is archived.
        """
        amount = require_positive(to_money(amount))
        code = self._lock_code(budget_code_id)

        with LogContext.bind(budget_code=code.code, requisition_id=requisition_id):
            if not code.active:
                raise BudgetCodeInactiveError(code.code)

            held = self.active_reservation_for(requisition_id)
            if held is not None:
                raise DuplicateReservationError(str(requisition_id), str(held.id))

            self._apply(code, self._position(code).reserve(amount, code.code))
            allocation = BudgetAllocationModel(
                budget_code_id=code.id,
                requisition_id=requisition_id,
                amount=amount,
                status=AllocationStatus.ALLOCATED.value,
                allocated_at=self.clock.now(),
            )
            self.session.add(allocation)
            self.flush("BudgetCode", code.code)

            logger.info(
                "budget_reserved",
                extra={
                    "reservation_id": str(allocation.id),
                    "amount": str(amount),
                    "remaining": str(code.total_budget - code.used - code.reserved),
                },
            )
            return allocation.id

    def commit(self, reservation_id: UUID, actual_amount: Decimal) -> Allocation:
        """
        Convert a reservation into spend at ``actual_amount``.

        The reserved amount leaves ``reserved``; the actual amount lands in
        ``used``.  A cheaper actual returns the difference to remaining.
        """
        actual = to_money(actual_amount, "actual_amount")
        if actual < ZERO:
            raise ValidationError("actual_amount", "cannot be negative")

        allocation, code = self._lock_allocation(reservation_id)
        if allocation.status != AllocationStatus.ALLOCATED.value:
            raise ReservationNotFoundError(
                str(reservation_id), f"reservation is {allocation.status}"
            )

        self._apply(
            code,
            self._position(code).commit(allocation.amount, actual, code.code),
        )
        allocation.status = AllocationStatus.CONSUMED.value
        allocation.actual_amount = actual
        allocation.consumed_at = self.clock.now()
        self.flush("BudgetCode", code.code)

        logger.info(
            "budget_committed",
            extra={
                "budget_code": code.code,
                "reservation_id": str(reservation_id),
                "reserved_amount": str(allocation.amount),
                "actual_amount": str(actual),
                "used": str(code.used),
            },
        )
        return allocation.to_dto()

    def release(self, reservation_id: UUID, reason: str) -> Allocation:
        """Free an allocated reservation."""
        allocation, code = self._lock_allocation(reservation_id)
        if allocation.status != AllocationStatus.ALLOCATED.value:
            raise ReservationNotFoundError(
                str(reservation_id), f"reservation is {allocation.status}"
            )
        self._release(allocation, code, reason)
        self.flush("BudgetCode", code.code)
        return allocation.to_dto()

    def _release(
        self,
        allocation: BudgetAllocationModel,
        code: BudgetCodeModel,
        reason: str,
    ) -> None:
        self._apply(code, self._position(code).release(allocation.amount))
        allocation.status = AllocationStatus.RELEASED.value
        allocation.released_at = self.clock.now()
        allocation.release_reason = reason
        logger.info(
            "budget_released",
            extra={
                "budget_code": code.code,
                "reservation_id": str(allocation.id),
                "amount": str(allocation.amount),
                "reason": reason,
            },
        )

    def reconcile(self, reservation_id: UUID, actual_amount: Decimal) -> Allocation:
        """Re-price a consumed reservation when the final cost differs."""
        actual = to_money(actual_amount, "actual_amount")
        if actual < ZERO:
            raise ValidationError("actual_amount", "cannot be negative")

        allocation, code = self._lock_allocation(reservation_id)
        if allocation.status != AllocationStatus.CONSUMED.value:
            raise ReservationNotFoundError(
                str(reservation_id), f"reservation is {allocation.status}, not consumed"
            )

        previous = allocation.actual_amount or ZERO
        self._apply(
            code,
            self._position(code).reconcile(previous, actual, code.code),
        )
        allocation.actual_amount = actual
        self.flush("BudgetCode", code.code)

        logger.info(
            "budget_reconciled",
            extra={
                "budget_code": code.code,
                "reservation_id": str(reservation_id),
                "previous_actual": str(previous),
                "actual_amount": str(actual),
            },
        )
        return allocation.to_dto()

    def release_stale_for_code(
        self,
        budget_code_id: UUID,
        max_age_days: int = 30,
    ) -> StaleReleaseResult:
        """Release this code's allocations older than ``max_age_days``."""
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        code = self._lock_code(budget_code_id)

        stale = self.session.execute(
            select(BudgetAllocationModel)
            .where(
                BudgetAllocationModel.budget_code_id == code.id,
                BudgetAllocationModel.status == AllocationStatus.ALLOCATED.value,
                BudgetAllocationModel.allocated_at < cutoff,
            )
            .execution_options(populate_existing=True)
        ).scalars().all()

        total = ZERO
        for allocation in stale:
            total += allocation.amount
            self._release(allocation, code, STALE_RELEASE_REASON)
        if stale:
            self.flush("BudgetCode", code.code)

        return StaleReleaseResult(
            count=len(stale),
            amount=total,
            budget_codes=(code.code,) if stale else (),
        )

    def codes_with_stale_reservations(self, max_age_days: int = 30) -> list[UUID]:
        """Active codes holding allocations older than ``max_age_days``."""
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        return list(
            self.session.execute(
                select(BudgetCodeModel.id)
                .join(BudgetAllocationModel, BudgetAllocationModel.budget_code_id == BudgetCodeModel.id)
                .where(
                    BudgetCodeModel.active.is_(True),
                    BudgetAllocationModel.status == AllocationStatus.ALLOCATED.value,
                    BudgetAllocationModel.allocated_at < cutoff,
                )
                .distinct()
                .order_by(BudgetCodeModel.id)
            ).scalars().all()
        )

    def release_stale(self, max_age_days: int = 30) -> StaleReleaseResult:
        """
        Release every allocation older than ``max_age_days`` on active codes.

        Idempotent: a second run over the same data releases nothing.
        """
        if max_age_days < 1:
            raise ValidationError("max_age_days", "must be at least 1")

        count = 0
        amount = ZERO
        codes: list[str] = []
        for code_id in self.codes_with_stale_reservations(max_age_days):
            result = self.release_stale_for_code(code_id, max_age_days)
            count += result.count
            amount += result.amount
            codes.extend(result.budget_codes)

        logger.info(
            "stale_reservations_released",
            extra={
                "max_age_days": max_age_days,
                "released_count": count,
                "released_amount": str(amount),
                "budget_codes": codes,
            },
        )
        return StaleReleaseResult(count=count, amount=amount, budget_codes=tuple(codes))

    # =========================================================================
    # Reads used inside write paths
    # =========================================================================

    def get_budget_code(self, budget_code_id: UUID) -> BudgetCode:
        model = self.session.get(BudgetCodeModel, budget_code_id)
        if model is None:
            raise BudgetCodeNotFoundError(str(budget_code_id))
        return model.to_dto()

    def get_allocation(self, reservation_id: UUID) -> Allocation:
        model = self.session.get(BudgetAllocationModel, reservation_id)
        if model is None:
            raise ReservationNotFoundError(str(reservation_id))
        return model.to_dto()

    def active_reservation_for(self, requisition_id: UUID) -> Allocation | None:
        model = self.session.execute(
            select(BudgetAllocationModel).where(
                BudgetAllocationModel.requisition_id == requisition_id,
                BudgetAllocationModel.status == AllocationStatus.ALLOCATED.value,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model else None
