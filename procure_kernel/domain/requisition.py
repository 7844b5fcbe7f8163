"""
Requisition Domain Models (``procure_kernel.domain.requisition``).

Responsibility
--------------
Frozen value objects for purchase requisitions: the submission draft,
line items, the per-stage review records, the petty-cash form and the
full read snapshot returned by the workflow service.

Architecture position
---------------------
**Kernel domain layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* All monetary fields use ``Decimal``.
* ``validate_draft`` rejects a submission before anything is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from procure_kernel.db.types import ZERO, round_money, to_money
from procure_kernel.domain.approval import ApprovalStage, ApprovalStep, ApproverRef
from procure_kernel.exceptions import ValidationError


class RequisitionStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SUPERVISOR = "pending_supervisor"
    PENDING_FINANCE_VERIFICATION = "pending_finance_verification"
    PENDING_SUPPLY_CHAIN_REVIEW = "pending_supply_chain_review"
    PENDING_BUYER_ASSIGNMENT = "pending_buyer_assignment"
    PENDING_HEAD_APPROVAL = "pending_head_approval"
    PENDING_CLARIFICATION = "pending_clarification"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPPLY_CHAIN_REJECTED = "supply_chain_rejected"
    CANCELLED = "cancelled"
    IN_PROCUREMENT = "in_procurement"
    PROCUREMENT_COMPLETE = "procurement_complete"
    DELIVERED = "delivered"


TERMINAL_STATUSES: frozenset[RequisitionStatus] = frozenset({
    RequisitionStatus.DELIVERED,
    RequisitionStatus.REJECTED,
    RequisitionStatus.SUPPLY_CHAIN_REJECTED,
    RequisitionStatus.CANCELLED,
})

# Statuses in which an approval step is waiting for a decision.
AWAITING_DECISION_STATUSES: frozenset[RequisitionStatus] = frozenset({
    RequisitionStatus.PENDING_SUPERVISOR,
    RequisitionStatus.PENDING_FINANCE_VERIFICATION,
    RequisitionStatus.PENDING_SUPPLY_CHAIN_REVIEW,
    RequisitionStatus.PENDING_BUYER_ASSIGNMENT,
    RequisitionStatus.PENDING_HEAD_APPROVAL,
})

STAGE_STATUS: dict[ApprovalStage, RequisitionStatus] = {
    ApprovalStage.SUPERVISOR: RequisitionStatus.PENDING_SUPERVISOR,
    ApprovalStage.FINANCE: RequisitionStatus.PENDING_FINANCE_VERIFICATION,
    ApprovalStage.SUPPLY_CHAIN: RequisitionStatus.PENDING_SUPPLY_CHAIN_REVIEW,
    ApprovalStage.HEAD: RequisitionStatus.PENDING_HEAD_APPROVAL,
}


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PaymentMethod(str, Enum):
    BANK = "bank"
    CASH = "cash"


class PurchaseType(str, Enum):
    OPEX = "opex"
    CAPEX = "capex"
    STANDARD = "standard"
    EMERGENCY = "emergency"


class SourcingType(str, Enum):
    DIRECT_PURCHASE = "direct_purchase"
    QUOTATION_REQUIRED = "quotation_required"
    TENDER_PROCESS = "tender_process"
    FRAMEWORK_AGREEMENT = "framework_agreement"


class PettyCashStatus(str, Enum):
    PENDING_DISBURSEMENT = "pending_disbursement"
    DISBURSED = "disbursed"
    RECEIPTS_SUBMITTED = "receipts_submitted"
    COMPLETED = "completed"


# Forms move one step at a time: cash handed over, receipts back, closed.
PETTY_CASH_NEXT_STATUS: dict[PettyCashStatus, PettyCashStatus] = {
    PettyCashStatus.PENDING_DISBURSEMENT: PettyCashStatus.DISBURSED,
    PettyCashStatus.DISBURSED: PettyCashStatus.RECEIPTS_SUBMITTED,
    PettyCashStatus.RECEIPTS_SUBMITTED: PettyCashStatus.COMPLETED,
}


class ClarificationKind(str, Enum):
    REQUESTED = "requested"
    RESPONDED = "responded"


@dataclass(frozen=True)
class RequisitionItem:
    """A line item on a purchase requisition."""
    description: str
    quantity: int
    unit: str = "unit"
    estimated_unit_price: Decimal = ZERO

    @property
    def estimated_total(self) -> Decimal:
        return round_money(self.estimated_unit_price * self.quantity)


@dataclass(frozen=True)
class RequisitionDraft:
    """What a requester submits."""
    title: str
    justification: str
    items: tuple[RequisitionItem, ...]
    payment_method: PaymentMethod = PaymentMethod.BANK
    urgency: Urgency = Urgency.MEDIUM
    purchase_type: PurchaseType = PurchaseType.STANDARD
    requested_amount: Decimal | None = None
    delivery_location: str | None = None
    expected_date: date | None = None
    currency: str | None = None

    @property
    def estimated_total(self) -> Decimal:
        return sum((item.estimated_total for item in self.items), ZERO)

    @property
    def amount(self) -> Decimal:
        """Requested amount, defaulting to the sum of line estimates."""
        if self.requested_amount is not None:
            return self.requested_amount
        return self.estimated_total


@dataclass(frozen=True)
class FinanceVerification:
    decision: str
    budget_available: bool
    verified_by: str
    verified_at: datetime
    budget_code_id: UUID | None = None
    verified_amount: Decimal | None = None
    available_at_verification: Decimal | None = None
    comments: str | None = None


@dataclass(frozen=True)
class SupplyChainReview:
    decision: str
    reviewed_by: str
    reviewed_at: datetime
    sourcing_type: SourcingType | None = None
    purchase_type: PurchaseType | None = None
    comments: str | None = None
    assigned_buyer: ApproverRef | None = None
    buyer_assigned_at: datetime | None = None
    buyer_assigned_by: str | None = None


@dataclass(frozen=True)
class HeadApproval:
    decision: str
    decided_by: str
    decided_at: datetime
    comments: str | None = None
    final_amount: Decimal | None = None


@dataclass(frozen=True)
class PettyCashForm:
    form_number: str
    requisition_id: UUID
    amount: Decimal
    generated_at: datetime
    generated_by: str
    status: PettyCashStatus = PettyCashStatus.PENDING_DISBURSEMENT


@dataclass(frozen=True)
class RejectionRecord:
    stage: ApprovalStage
    level: int
    rejected_by: str
    reason: str | None
    rejected_at: datetime


@dataclass(frozen=True)
class ClarificationRecord:
    kind: ClarificationKind
    from_level: int
    to_level: int
    actor_email: str
    message: str
    recorded_at: datetime


@dataclass(frozen=True)
class Requisition:
    """Read snapshot of a requisition aggregate."""
    id: UUID
    number: str
    requester_id: UUID
    requester_email: str
    requester_name: str
    department: str
    title: str
    justification: str
    requested_amount: Decimal
    currency: str
    status: RequisitionStatus
    urgency: Urgency
    payment_method: PaymentMethod
    purchase_type: PurchaseType
    version: int
    created_at: datetime
    items: tuple[RequisitionItem, ...] = field(default_factory=tuple)
    approval_chain: tuple[ApprovalStep, ...] = field(default_factory=tuple)
    resume_status: RequisitionStatus | None = None
    delivery_location: str | None = None
    expected_date: date | None = None
    budget_code_id: UUID | None = None
    reservation_id: UUID | None = None
    finance_verification: FinanceVerification | None = None
    supply_chain_review: SupplyChainReview | None = None
    head_approval: HeadApproval | None = None
    petty_cash_form: PettyCashForm | None = None
    actual_cost: Decimal | None = None
    procurement_completed_at: datetime | None = None
    rejections: tuple[RejectionRecord, ...] = field(default_factory=tuple)
    clarifications: tuple[ClarificationRecord, ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def assigned_buyer(self) -> ApproverRef | None:
        if self.supply_chain_review is None:
            return None
        return self.supply_chain_review.assigned_buyer


def validate_draft(
    draft: RequisitionDraft,
    min_justification_length: int = 20,
) -> RequisitionDraft:
    """
    Reject an unusable submission before anything is persisted.

    Returns the draft with monetary fields normalised.
    """
    if not draft.title or len(draft.title.strip()) < 3:
        raise ValidationError("title", "must be at least 3 characters")
    if len((draft.justification or "").strip()) < min_justification_length:
        raise ValidationError(
            "justification",
            f"must be at least {min_justification_length} characters",
        )
    if not draft.items:
        raise ValidationError("items", "at least one item is required")

    items = []
    for index, item in enumerate(draft.items, start=1):
        if not item.description or not item.description.strip():
            raise ValidationError(f"items[{index}].description", "is required")
        if item.quantity < 1:
            raise ValidationError(f"items[{index}].quantity", "must be at least 1")
        price = to_money(item.estimated_unit_price, f"items[{index}].estimated_unit_price")
        if price < ZERO:
            raise ValidationError(
                f"items[{index}].estimated_unit_price", "cannot be negative"
            )
        items.append(
            RequisitionItem(
                description=item.description.strip(),
                quantity=item.quantity,
                unit=item.unit,
                estimated_unit_price=price,
            )
        )

    requested = None
    if draft.requested_amount is not None:
        requested = to_money(draft.requested_amount, "requested_amount")

    normalised = RequisitionDraft(
        title=draft.title.strip(),
        justification=draft.justification.strip(),
        items=tuple(items),
        payment_method=PaymentMethod(draft.payment_method),
        urgency=Urgency(draft.urgency),
        purchase_type=PurchaseType(draft.purchase_type),
        requested_amount=requested,
        delivery_location=draft.delivery_location,
        expected_date=draft.expected_date,
        currency=draft.currency,
    )
    if normalised.amount <= ZERO:
        raise ValidationError("requested_amount", "must be positive")
    return normalised
