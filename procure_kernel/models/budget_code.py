"""
Budget code ORM models.

BudgetCodeModel is the aggregate root of the ledger: total, committed
(``used``) and a denormalized ``reserved`` figure that always equals the
sum of its ``allocated`` allocations.  A version column guards every write
against lost updates.

Invariants enforced:
    - CHECK total_budget >= 0, used >= 0, reserved >= 0.
    - One ``allocated`` allocation per requisition (partial unique index).
    - Budget codes are archived (active = false), never deleted.
    - Budget history rows are append-only.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procure_kernel.db.base import Base, TrackedBase, UUIDString
from procure_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from procure_kernel.domain.budget import Allocation, BudgetCode, BudgetHistoryEntry


class BudgetCodeModel(TrackedBase):
    """A departmental / project budget line that requisitions draw on."""

    __tablename__ = "budget_codes"

    __table_args__ = (
        CheckConstraint("total_budget >= 0", name="ck_budget_codes_total_non_negative"),
        CheckConstraint("used >= 0", name="ck_budget_codes_used_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_budget_codes_reserved_non_negative"),
        Index("ix_budget_codes_department_active", "department", "active"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_type: Mapped[str] = mapped_column(String(20), nullable=False)
    budget_period: Mapped[str] = mapped_column(String(20), nullable=False)
    budget_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_budget: Mapped[Decimal] = mapped_column(nullable=False)
    used: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    reserved: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    allocations: Mapped[list["BudgetAllocationModel"]] = relationship(
        "BudgetAllocationModel",
        back_populates="budget_code",
        order_by="BudgetAllocationModel.allocated_at",
        lazy="selectin",
    )
    history: Mapped[list["BudgetHistoryModel"]] = relationship(
        "BudgetHistoryModel",
        order_by="BudgetHistoryModel.changed_at",
        lazy="select",
    )

    def __repr__(self) -> str:
        return (
            f"<BudgetCode {self.code} total={self.total_budget} "
            f"used={self.used} reserved={self.reserved}>"
        )

    def to_dto(self) -> BudgetCode:
        """Convert ORM model to frozen domain DTO."""
        from procure_kernel.domain.budget import BudgetCode, BudgetPeriod, BudgetType

        return BudgetCode(
            id=self.id,
            code=self.code,
            name=self.name,
            department=self.department,
            budget_type=BudgetType(self.budget_type),
            budget_period=BudgetPeriod(self.budget_period),
            total_budget=self.total_budget,
            used=self.used,
            reserved=self.reserved,
            active=self.active,
            start_date=self.start_date,
            end_date=self.end_date,
            budget_owner=self.budget_owner,
            description=self.description,
            version=self.version,
        )


class BudgetAllocationModel(Base):
    """A reservation of funds on a budget code for one requisition."""

    __tablename__ = "budget_allocations"

    __table_args__ = (
        CheckConstraint(
            "status IN ('allocated', 'released', 'consumed')",
            name="ck_budget_allocations_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_budget_allocations_amount_positive"),
        Index(
            "uq_budget_allocations_active_requisition",
            "requisition_id",
            unique=True,
            postgresql_where=text("status = 'allocated'"),
            sqlite_where=text("status = 'allocated'"),
        ),
        Index("ix_budget_allocations_status_allocated_at", "status", "allocated_at"),
    )

    budget_code_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("budget_codes.id"), nullable=False, index=True,
    )
    requisition_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    actual_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="allocated")
    allocated_at: Mapped[datetime] = mapped_column(nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    budget_code: Mapped[BudgetCodeModel] = relationship(
        "BudgetCodeModel", back_populates="allocations",
    )

    def __repr__(self) -> str:
        return f"<BudgetAllocation {self.id} {self.amount} status={self.status}>"

    def to_dto(self) -> Allocation:
        from procure_kernel.domain.budget import Allocation, AllocationStatus

        return Allocation(
            id=self.id,
            budget_code_id=self.budget_code_id,
            requisition_id=self.requisition_id,
            amount=self.amount,
            status=AllocationStatus(self.status),
            allocated_at=self.allocated_at,
            actual_amount=self.actual_amount,
            consumed_at=self.consumed_at,
            released_at=self.released_at,
            release_reason=self.release_reason,
        )


class BudgetHistoryModel(Base):
    """Append-only record of a change to a budget code's total."""

    __tablename__ = "budget_history"

    budget_code_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("budget_codes.id"), nullable=False, index=True,
    )
    previous_total: Mapped[Decimal] = mapped_column(nullable=False)
    new_total: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    changed_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> BudgetHistoryEntry:
        from procure_kernel.domain.budget import BudgetHistoryEntry

        return BudgetHistoryEntry(
            previous_total=self.previous_total,
            new_total=self.new_total,
            reason=self.reason,
            changed_by_id=self.changed_by_id,
            changed_at=self.changed_at,
        )


@event.listens_for(BudgetCodeModel, "before_delete")
def prevent_budget_code_delete(mapper, connection, target):
    """Budget codes are archived, never deleted."""
    raise ImmutabilityViolationError(
        entity_type="BudgetCode",
        entity_id=str(target.id),
        reason="Budget codes cannot be deleted -- deactivate instead",
    )


@event.listens_for(BudgetHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="BudgetHistory",
        entity_id=str(target.id),
        reason="Budget history is append-only -- cannot modify",
    )


@event.listens_for(BudgetHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="BudgetHistory",
        entity_id=str(target.id),
        reason="Budget history is append-only -- cannot delete",
    )
