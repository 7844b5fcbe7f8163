"""
Requisition ORM models.

RequisitionModel is the aggregate root.  Its items, approval steps,
rejection and clarification records and petty-cash form are owned
collections: they are only ever changed through the workflow service,
which touches the root on every transition so the root's version column
covers the whole aggregate.

Invariants enforced:
    - Status values are limited to the workflow's states (CHECK).
    - UNIQUE(requisition_id, level) on approval steps.
    - One petty-cash form per requisition; form numbers are unique.
    - Rejection and clarification records are append-only.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procure_kernel.db.base import Base, TrackedBase, UUIDString
from procure_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from procure_kernel.domain.approval import ApprovalStep
    from procure_kernel.domain.requisition import (
        ClarificationRecord,
        PettyCashForm,
        RejectionRecord,
        Requisition,
        RequisitionItem,
    )

_STATUS_VALUES = (
    "'draft', 'pending_supervisor', 'pending_finance_verification', "
    "'pending_supply_chain_review', 'pending_buyer_assignment', "
    "'pending_head_approval', 'pending_clarification', 'approved', "
    "'rejected', 'supply_chain_rejected', 'cancelled', 'in_procurement', "
    "'procurement_complete', 'delivered'"
)


class RequisitionModel(TrackedBase):
    """Persistent purchase requisition (aggregate root)."""

    __tablename__ = "requisitions"

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_STATUS_VALUES})",
            name="ck_requisitions_valid_status",
        ),
        CheckConstraint(
            "requested_amount > 0", name="ck_requisitions_amount_positive",
        ),
        Index("ix_requisitions_status_created", "status", "created_at"),
        Index("ix_requisitions_requester", "requester_id"),
    )

    number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requester_email: Mapped[str] = mapped_column(String(255), nullable=False)
    requester_name: Mapped[str] = mapped_column(String(255), nullable=False)
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expected_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    requested_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    urgency: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(10), nullable=False)
    purchase_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="draft")
    resume_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    last_action: Mapped[str | None] = mapped_column(String(40), nullable=True)
    last_action_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Budget
    budget_code_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("budget_codes.id"), nullable=True,
    )
    reservation_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Finance verification
    finance_decision: Mapped[str | None] = mapped_column(String(10), nullable=True)
    finance_budget_available: Mapped[bool | None] = mapped_column(nullable=True)
    finance_verified_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    finance_available_at_verification: Mapped[Decimal | None] = mapped_column(nullable=True)
    finance_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    finance_verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    finance_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Supply-chain review; assigned_buyer_* is the only buyer assignment.
    supply_chain_decision: Mapped[str | None] = mapped_column(String(10), nullable=True)
    sourcing_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    assigned_purchase_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    supply_chain_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    supply_chain_reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    supply_chain_reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    assigned_buyer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_buyer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    buyer_assigned_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    buyer_assigned_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Head approval
    head_decision: Mapped[str | None] = mapped_column(String(10), nullable=True)
    head_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    head_decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    head_decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    head_final_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Procurement
    actual_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    procurement_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    items: Mapped[list["RequisitionItemModel"]] = relationship(
        "RequisitionItemModel",
        order_by="RequisitionItemModel.line_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        "ApprovalStepModel",
        order_by="ApprovalStepModel.level",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    rejections: Mapped[list["RejectionRecordModel"]] = relationship(
        "RejectionRecordModel",
        order_by="RejectionRecordModel.rejected_at",
        lazy="selectin",
    )
    clarifications: Mapped[list["ClarificationRecordModel"]] = relationship(
        "ClarificationRecordModel",
        order_by="ClarificationRecordModel.recorded_at",
        lazy="selectin",
    )
    petty_cash_form: Mapped["PettyCashFormModel | None"] = relationship(
        "PettyCashFormModel",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Requisition {self.number} status={self.status} v{self.version}>"

    def to_dto(self) -> Requisition:
        """Convert ORM aggregate to a frozen domain snapshot."""
        from procure_kernel.domain.approval import ApproverRef
        from procure_kernel.domain.requisition import (
            FinanceVerification,
            HeadApproval,
            PaymentMethod,
            PurchaseType,
            Requisition,
            RequisitionStatus,
            SourcingType,
            SupplyChainReview,
            Urgency,
        )

        finance = None
        if self.finance_decision is not None:
            finance = FinanceVerification(
                decision=self.finance_decision,
                budget_available=bool(self.finance_budget_available),
                verified_by=self.finance_verified_by or "",
                verified_at=self.finance_verified_at,
                budget_code_id=self.budget_code_id,
                verified_amount=self.finance_verified_amount,
                available_at_verification=self.finance_available_at_verification,
                comments=self.finance_comments,
            )

        review = None
        if self.supply_chain_decision is not None:
            buyer = None
            if self.assigned_buyer_email is not None:
                buyer = ApproverRef(
                    email=self.assigned_buyer_email,
                    name=self.assigned_buyer_name or self.assigned_buyer_email,
                    role="buyer",
                    department="Supply Chain",
                )
            review = SupplyChainReview(
                decision=self.supply_chain_decision,
                reviewed_by=self.supply_chain_reviewed_by or "",
                reviewed_at=self.supply_chain_reviewed_at,
                sourcing_type=SourcingType(self.sourcing_type) if self.sourcing_type else None,
                purchase_type=(
                    PurchaseType(self.assigned_purchase_type)
                    if self.assigned_purchase_type else None
                ),
                comments=self.supply_chain_comments,
                assigned_buyer=buyer,
                buyer_assigned_at=self.buyer_assigned_at,
                buyer_assigned_by=self.buyer_assigned_by,
            )

        head = None
        if self.head_decision is not None:
            head = HeadApproval(
                decision=self.head_decision,
                decided_by=self.head_decided_by or "",
                decided_at=self.head_decided_at,
                comments=self.head_comments,
                final_amount=self.head_final_amount,
            )

        return Requisition(
            id=self.id,
            number=self.number,
            requester_id=self.requester_id,
            requester_email=self.requester_email,
            requester_name=self.requester_name,
            department=self.department,
            title=self.title,
            justification=self.justification,
            requested_amount=self.requested_amount,
            currency=self.currency,
            status=RequisitionStatus(self.status),
            urgency=Urgency(self.urgency),
            payment_method=PaymentMethod(self.payment_method),
            purchase_type=PurchaseType(self.purchase_type),
            version=self.version,
            created_at=self.created_at,
            items=tuple(i.to_dto() for i in self.items),
            approval_chain=self.chain(),
            resume_status=RequisitionStatus(self.resume_status) if self.resume_status else None,
            delivery_location=self.delivery_location,
            expected_date=self.expected_date,
            budget_code_id=self.budget_code_id,
            reservation_id=self.reservation_id,
            finance_verification=finance,
            supply_chain_review=review,
            head_approval=head,
            petty_cash_form=self.petty_cash_form.to_dto() if self.petty_cash_form else None,
            actual_cost=self.actual_cost,
            procurement_completed_at=self.procurement_completed_at,
            rejections=tuple(r.to_dto() for r in self.rejections),
            clarifications=tuple(c.to_dto() for c in self.clarifications),
        )

    def chain(self) -> tuple[ApprovalStep, ...]:
        return tuple(step.to_dto() for step in self.steps)


class RequisitionItemModel(Base):
    __tablename__ = "requisition_items"

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_requisition_items_quantity"),
        UniqueConstraint("requisition_id", "line_number", name="uq_requisition_items_line"),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("requisitions.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    estimated_unit_price: Mapped[Decimal] = mapped_column(nullable=False)

    def to_dto(self) -> RequisitionItem:
        from procure_kernel.domain.requisition import RequisitionItem

        return RequisitionItem(
            description=self.description,
            quantity=self.quantity,
            unit=self.unit,
            estimated_unit_price=self.estimated_unit_price,
        )


class ApprovalStepModel(Base):
    """One level of a requisition's approval chain."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint("requisition_id", "level", name="uq_approval_steps_level"),
        CheckConstraint(
            "status IN ('waiting', 'pending', 'approved', 'rejected', "
            "'needs_clarification', 'clarification_provided')",
            name="ck_approval_steps_valid_status",
        ),
        Index("ix_approval_steps_approver_status", "approver_email", "status"),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("requisitions.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    approver_email: Mapped[str] = mapped_column(String(255), nullable=False)
    approver_name: Mapped[str] = mapped_column(String(255), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_department: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clarification_from_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    clarification_requested_by_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clarification_requested_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clarification_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarification_requested_at: Mapped[datetime | None] = mapped_column(nullable=True)
    clarification_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarification_responded_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    clarification_responded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> ApprovalStep:
        from procure_kernel.domain.approval import (
            ApprovalStage,
            ApprovalStep,
            ApproverRef,
            ClarificationRequest,
            ClarificationResponse,
            StepStatus,
        )

        request = None
        if self.clarification_message is not None:
            request = ClarificationRequest(
                requested_by_level=self.clarification_from_level,
                requested_by_email=self.clarification_requested_by_email,
                requested_by_name=self.clarification_requested_by_name,
                message=self.clarification_message,
                requested_at=self.clarification_requested_at,
            )
        response = None
        if self.clarification_response is not None:
            response = ClarificationResponse(
                message=self.clarification_response,
                responded_by_email=self.clarification_responded_by,
                responded_at=self.clarification_responded_at,
            )

        return ApprovalStep(
            level=self.level,
            stage=ApprovalStage(self.stage),
            approver=ApproverRef(
                email=self.approver_email,
                name=self.approver_name,
                role=self.approver_role,
                department=self.approver_department,
            ),
            status=StepStatus(self.status),
            comments=self.comments,
            decided_at=self.decided_at,
            decided_by=self.decided_by,
            clarification_request=request,
            clarification_response=response,
        )

    @classmethod
    def from_dto(cls, requisition_id: UUID, dto: ApprovalStep) -> ApprovalStepModel:
        model = cls(
            requisition_id=requisition_id,
            level=dto.level,
            stage=dto.stage.value,
            approver_email=dto.approver.email,
            approver_name=dto.approver.name,
            approver_role=dto.approver.role,
            approver_department=dto.approver.department,
        )
        model.apply(dto)
        return model

    def apply(self, dto: ApprovalStep) -> None:
        """Copy the mutable parts of a step DTO onto this row."""
        self.status = dto.status.value
        self.comments = dto.comments
        self.decided_at = dto.decided_at
        self.decided_by = dto.decided_by

        request = dto.clarification_request
        self.clarification_from_level = request.requested_by_level if request else None
        self.clarification_requested_by_email = request.requested_by_email if request else None
        self.clarification_requested_by_name = request.requested_by_name if request else None
        self.clarification_message = request.message if request else None
        self.clarification_requested_at = request.requested_at if request else None

        response = dto.clarification_response
        self.clarification_response = response.message if response else None
        self.clarification_responded_by = response.responded_by_email if response else None
        self.clarification_responded_at = response.responded_at if response else None


class RejectionRecordModel(Base):
    """Append-only record of a rejection decision."""

    __tablename__ = "requisition_rejections"

    requisition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("requisitions.id"), nullable=False, index=True,
    )
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    rejected_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> RejectionRecord:
        from procure_kernel.domain.approval import ApprovalStage
        from procure_kernel.domain.requisition import RejectionRecord

        return RejectionRecord(
            stage=ApprovalStage(self.stage),
            level=self.level,
            rejected_by=self.rejected_by,
            reason=self.reason,
            rejected_at=self.rejected_at,
        )


class ClarificationRecordModel(Base):
    """Append-only clarification history entry (request or response)."""

    __tablename__ = "requisition_clarifications"

    __table_args__ = (
        CheckConstraint(
            "kind IN ('requested', 'responded')",
            name="ck_requisition_clarifications_kind",
        ),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("requisitions.id"), nullable=False, index=True,
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    from_level: Mapped[int] = mapped_column(Integer, nullable=False)
    to_level: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_email: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> ClarificationRecord:
        from procure_kernel.domain.requisition import ClarificationKind, ClarificationRecord

        return ClarificationRecord(
            kind=ClarificationKind(self.kind),
            from_level=self.from_level,
            to_level=self.to_level,
            actor_email=self.actor_email,
            message=self.message,
            recorded_at=self.recorded_at,
        )


class PettyCashFormModel(Base):
    """Petty-cash form issued for an approved cash requisition."""

    __tablename__ = "petty_cash_forms"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_disbursement', 'disbursed', "
            "'receipts_submitted', 'completed')",
            name="ck_petty_cash_forms_valid_status",
        ),
    )

    requisition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("requisitions.id"), nullable=False, unique=True,
    )
    form_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    generated_at: Mapped[datetime] = mapped_column(nullable=False)
    generated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending_disbursement",
    )

    def to_dto(self) -> PettyCashForm:
        from procure_kernel.domain.requisition import PettyCashForm, PettyCashStatus

        return PettyCashForm(
            form_number=self.form_number,
            requisition_id=self.requisition_id,
            amount=self.amount,
            generated_at=self.generated_at,
            generated_by=self.generated_by,
            status=PettyCashStatus(self.status),
        )


def _immutable(model, entity_type: str) -> None:
    @event.listens_for(model, "before_update")
    def _prevent_update(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} records are append-only -- cannot modify",
        )

    @event.listens_for(model, "before_delete")
    def _prevent_delete(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} records are append-only -- cannot delete",
        )


_immutable(RejectionRecordModel, "Rejection")
_immutable(ClarificationRecordModel, "Clarification")
