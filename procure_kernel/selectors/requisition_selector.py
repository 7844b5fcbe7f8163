"""
Module: procure_kernel.selectors.requisition_selector
Responsibility: Read-only requisition queries: work queues per approver,
    audit histories and the head-of-business dashboard figures.
Architecture position: Kernel > Selectors.  Read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, or_, select

from procure_kernel.db.types import ZERO
from procure_kernel.domain.approval import StepStatus
from procure_kernel.domain.requisition import (
    ClarificationRecord,
    RejectionRecord,
    Requisition,
    RequisitionStatus,
)
from procure_kernel.exceptions import RequisitionNotFoundError
from procure_kernel.models.requisition import (
    ApprovalStepModel,
    ClarificationRecordModel,
    PettyCashFormModel,
    RejectionRecordModel,
    RequisitionModel,
)
from procure_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class HeadApprovalStats:
    pending_count: int
    approved_today: int
    total_pending_value: Decimal
    petty_cash_forms_today: int


def _day_bounds(as_of: datetime) -> tuple[datetime, datetime]:
    as_of = as_of.astimezone(timezone.utc)
    start = datetime.combine(as_of.date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class RequisitionSelector(BaseSelector[RequisitionModel]):
    """Read-only queries over requisitions."""

    def get(self, requisition_id: UUID) -> Requisition:
        model = self.session.get(RequisitionModel, requisition_id)
        if model is None:
            raise RequisitionNotFoundError(str(requisition_id))
        return model.to_dto()

    def by_number(self, number: str) -> Requisition | None:
        model = self.session.execute(
            select(RequisitionModel).where(RequisitionModel.number == number)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_by_status(
        self,
        status: RequisitionStatus | str,
        limit: int = 100,
    ) -> list[Requisition]:
        models = self.session.execute(
            select(RequisitionModel)
            .where(RequisitionModel.status == RequisitionStatus(status).value)
            .order_by(RequisitionModel.created_at, RequisitionModel.number)
            .limit(limit)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def list_for_requester(self, requester_id: UUID) -> list[Requisition]:
        models = self.session.execute(
            select(RequisitionModel)
            .where(RequisitionModel.requester_id == requester_id)
            .order_by(RequisitionModel.created_at.desc())
        ).scalars().all()
        return [m.to_dto() for m in models]

    def pending_for_approver(self, email: str) -> list[Requisition]:
        """
        Requisitions waiting on ``email``: a pending decision outside a
        clarification round, or an outstanding clarification question.
        """
        key = email.strip().lower()
        waiting_decision = (
            (ApprovalStepModel.status == StepStatus.PENDING.value)
            & (RequisitionModel.status != RequisitionStatus.PENDING_CLARIFICATION.value)
        )
        asked = ApprovalStepModel.status == StepStatus.NEEDS_CLARIFICATION.value

        models = self.session.execute(
            select(RequisitionModel)
            .join(ApprovalStepModel, ApprovalStepModel.requisition_id == RequisitionModel.id)
            .where(
                func.lower(ApprovalStepModel.approver_email) == key,
                or_(waiting_decision, asked),
            )
            .distinct()
            .order_by(RequisitionModel.created_at, RequisitionModel.number)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def clarification_history(self, requisition_id: UUID) -> list[ClarificationRecord]:
        return [
            m.to_dto()
            for m in self.session.execute(
                select(ClarificationRecordModel)
                .where(ClarificationRecordModel.requisition_id == requisition_id)
                .order_by(ClarificationRecordModel.recorded_at)
            ).scalars().all()
        ]

    def rejection_history(self, requisition_id: UUID) -> list[RejectionRecord]:
        return [
            m.to_dto()
            for m in self.session.execute(
                select(RejectionRecordModel)
                .where(RejectionRecordModel.requisition_id == requisition_id)
                .order_by(RejectionRecordModel.rejected_at)
            ).scalars().all()
        ]

    def head_approval_stats(self, as_of: datetime) -> HeadApprovalStats:
        """Dashboard figures for the head of business on ``as_of``'s UTC day."""
        start, end = _day_bounds(as_of)
        pending = RequisitionModel.status == RequisitionStatus.PENDING_HEAD_APPROVAL.value

        pending_count, pending_value = self.session.execute(
            select(
                func.count(RequisitionModel.id),
                func.coalesce(func.sum(RequisitionModel.requested_amount), 0),
            ).where(pending)
        ).one()

        approved_today = self.session.execute(
            select(func.count(RequisitionModel.id)).where(
                RequisitionModel.head_decision == "approve",
                RequisitionModel.head_decided_at >= start,
                RequisitionModel.head_decided_at < end,
            )
        ).scalar_one()

        forms_today = self.session.execute(
            select(func.count(PettyCashFormModel.id)).where(
                PettyCashFormModel.generated_at >= start,
                PettyCashFormModel.generated_at < end,
            )
        ).scalar_one()

        return HeadApprovalStats(
            pending_count=pending_count,
            approved_today=approved_today,
            total_pending_value=Decimal(str(pending_value)) if pending_value else ZERO,
            petty_cash_forms_today=forms_today,
        )
