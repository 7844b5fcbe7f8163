"""
Budget Ledger Domain (``procure_kernel.domain.budget``).

Responsibility
--------------
Value objects and pure arithmetic for budget codes: the position
(total, used, reserved), the legal moves on it, and the derived
utilization figures.  ``BudgetLedgerService`` loads a row, asks the
position whether a move is legal, and writes the result back.

Architecture position
---------------------
**Kernel domain layer** -- frozen dataclasses and pure functions.  ZERO I/O.

Invariants enforced
-------------------
* ``used <= total`` and ``used + reserved <= total`` after every move.
* ``used`` and ``reserved`` never go negative.
* All monetary fields use ``Decimal`` -- NEVER ``float``.

Failure modes
-------------
* ``InsufficientBudgetError`` when a reservation, commitment or
  reconciliation would exceed the total.
* ``ValidationError`` for malformed codes, names or amounts.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from procure_kernel.db.types import ZERO, round_money
from procure_kernel.exceptions import InsufficientBudgetError, ValidationError

BUDGET_CODE_PATTERN = re.compile(r"^[A-Z0-9\-_]+$")
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
GENERAL_DEPARTMENT = "General"


class BudgetType(str, Enum):
    DEPARTMENTAL = "departmental"
    PROJECT = "project"
    CAPITAL = "capital"
    OPERATIONAL = "operational"
    EMERGENCY = "emergency"
    MAINTENANCE = "maintenance"


class BudgetPeriod(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    PROJECT = "project"


class AllocationStatus(str, Enum):
    """Reservation lifecycle: allocated -> consumed | released."""
    ALLOCATED = "allocated"
    RELEASED = "released"
    CONSUMED = "consumed"


class AlertLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


class UtilizationBand(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class BudgetPosition:
    """The three figures every ledger move is checked against."""

    total: Decimal
    used: Decimal = ZERO
    reserved: Decimal = ZERO

    @property
    def remaining(self) -> Decimal:
        return self.total - self.used - self.reserved

    @property
    def utilization_percentage(self) -> Decimal:
        if self.total <= ZERO:
            return ZERO
        return round_money(self.used / self.total * 100)

    def reserve(self, amount: Decimal, budget_code: str) -> BudgetPosition:
        if amount > self.remaining:
            raise InsufficientBudgetError(
                budget_code, str(amount), str(self.remaining)
            )
        return replace(self, reserved=self.reserved + amount)

    def commit(
        self,
        reserved_amount: Decimal,
        actual_amount: Decimal,
        budget_code: str,
    ) -> BudgetPosition:
        """Turn a reservation into spend at its actual amount."""
        headroom = self.remaining + reserved_amount
        if actual_amount > headroom:
            raise InsufficientBudgetError(
                budget_code, str(actual_amount), str(headroom)
            )
        return replace(
            self,
            used=self.used + actual_amount,
            reserved=self.reserved - reserved_amount,
        )

    def release(self, reserved_amount: Decimal) -> BudgetPosition:
        return replace(self, reserved=self.reserved - reserved_amount)

    def reconcile(
        self,
        previous_actual: Decimal,
        new_actual: Decimal,
        budget_code: str,
    ) -> BudgetPosition:
        """Re-price already-committed spend."""
        headroom = self.remaining + previous_actual
        if new_actual > headroom:
            raise InsufficientBudgetError(
                budget_code, str(new_actual), str(headroom)
            )
        return replace(self, used=self.used - previous_actual + new_actual)

    def with_total(self, new_total: Decimal) -> BudgetPosition:
        floor = self.used + self.reserved
        if new_total < floor:
            raise ValidationError(
                "total_budget",
                f"{new_total} is below committed plus reserved funds ({floor})",
            )
        return replace(self, total=new_total)


@dataclass(frozen=True)
class Allocation:
    """A reservation held against a budget code."""

    id: UUID
    budget_code_id: UUID
    requisition_id: UUID
    amount: Decimal
    status: AllocationStatus
    allocated_at: datetime
    actual_amount: Decimal | None = None
    consumed_at: datetime | None = None
    released_at: datetime | None = None
    release_reason: str | None = None


@dataclass(frozen=True)
class BudgetHistoryEntry:
    previous_total: Decimal
    new_total: Decimal
    reason: str
    changed_by_id: UUID
    changed_at: datetime


@dataclass(frozen=True)
class BudgetCode:
    """Read model of a budget code."""

    id: UUID
    code: str
    name: str
    department: str
    budget_type: BudgetType
    budget_period: BudgetPeriod
    total_budget: Decimal
    used: Decimal
    reserved: Decimal
    active: bool
    start_date: date
    end_date: date | None = None
    budget_owner: str | None = None
    description: str | None = None
    version: int = 1

    @property
    def position(self) -> BudgetPosition:
        return BudgetPosition(self.total_budget, self.used, self.reserved)

    @property
    def remaining(self) -> Decimal:
        return self.position.remaining

    @property
    def utilization_percentage(self) -> Decimal:
        return self.position.utilization_percentage


@dataclass(frozen=True)
class StaleReleaseResult:
    """What a stale-reservation sweep released."""

    count: int
    amount: Decimal
    budget_codes: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def alert_level(
    utilization: Decimal,
    warning_threshold: Decimal = Decimal("75"),
    critical_threshold: Decimal = Decimal("90"),
) -> AlertLevel:
    if utilization >= critical_threshold:
        return AlertLevel.CRITICAL
    if utilization >= warning_threshold:
        return AlertLevel.WARNING
    return AlertLevel.NONE


def utilization_band(utilization: Decimal) -> UtilizationBand:
    if utilization >= 90:
        return UtilizationBand.CRITICAL
    if utilization >= 75:
        return UtilizationBand.HIGH
    if utilization >= 50:
        return UtilizationBand.MODERATE
    return UtilizationBand.LOW


def normalize_budget_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not normalized or not BUDGET_CODE_PATTERN.match(normalized):
        raise ValidationError(
            "code",
            "may only contain uppercase letters, digits, hyphens and underscores",
        )
    return normalized


def validate_budget_name(name: str) -> str:
    stripped = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(stripped) <= NAME_MAX_LENGTH:
        raise ValidationError(
            "name",
            f"must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
        )
    return stripped


def period_end_date(period: BudgetPeriod, start: date) -> date | None:
    """Default end date for a budget period starting on ``start``."""
    if period == BudgetPeriod.MONTHLY:
        return date(start.year, start.month, calendar.monthrange(start.year, start.month)[1])
    if period == BudgetPeriod.QUARTERLY:
        last_month = ((start.month - 1) // 3) * 3 + 3
        return date(start.year, last_month, calendar.monthrange(start.year, last_month)[1])
    if period == BudgetPeriod.YEARLY:
        return date(start.year, 12, 31)
    return None
