"""
PettyCashService -- petty-cash forms for approved cash requisitions.

Form generation runs inside a SAVEPOINT: the form number, the form row and
the rendered document either all succeed or the savepoint is rolled back.
A failure never undoes the approval it belongs to; it is logged as an
``ExternalDependencyError`` and the form can be generated again later.

Once issued, a form moves pending_disbursement -> disbursed ->
receipts_submitted -> completed, one step at a time.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.collaborators import PettyCashRenderer
from procure_kernel.domain.requisition import (
    PETTY_CASH_NEXT_STATUS,
    PettyCashForm,
    PettyCashStatus,
)
from procure_kernel.exceptions import InvalidTransitionError, PettyCashFormNotApplicableError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.requisition import PettyCashFormModel, RequisitionModel
from procure_kernel.services.external import report_external_failure
from procure_kernel.services.sequence_service import SequenceService

logger = get_logger("services.petty_cash")


class PettyCashService:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        prefix: str = "PCF",
        renderer: PettyCashRenderer | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._prefix = prefix
        self._renderer = renderer
        self._sequences = SequenceService(session)

    def generate(
        self,
        requisition: RequisitionModel,
        generated_by: str,
    ) -> PettyCashForm | None:
        """
        Issue the form for ``requisition``.

        Returns the form, or None if generation failed (already logged).
        """
        if requisition.petty_cash_form is not None:
            return requisition.petty_cash_form.to_dto()

        amount = (
            requisition.head_final_amount
            or requisition.finance_verified_amount
            or requisition.requested_amount
        )
        now = self._clock.now()
        savepoint = self._session.begin_nested()
        try:
            form = PettyCashFormModel(
                requisition_id=requisition.id,
                form_number=self._sequences.next_document_number(self._prefix, now),
                amount=amount,
                generated_at=now,
                generated_by=generated_by,
                status=PettyCashStatus.PENDING_DISBURSEMENT.value,
            )
            self._session.add(form)
            self._session.flush()
            if self._renderer is not None:
                self._renderer.render(
                    {
                        "form_number": form.form_number,
                        "requisition_number": requisition.number,
                        "requester": requisition.requester_name,
                        "department": requisition.department,
                        "title": requisition.title,
                        "amount": str(amount),
                        "currency": requisition.currency,
                        "generated_at": now.isoformat(),
                    }
                )
            savepoint.commit()
        except Exception as exc:
            savepoint.rollback()
            report_external_failure(
                logger,
                "petty_cash",
                "generate",
                exc,
                requisition_id=requisition.id,
            )
            return None

        requisition.petty_cash_form = form
        logger.info(
            "petty_cash_form_generated",
            extra={
                "requisition_id": str(requisition.id),
                "form_number": form.form_number,
                "amount": str(amount),
            },
        )
        return form.to_dto()

    def advance(
        self,
        requisition: RequisitionModel,
        status: PettyCashStatus,
        changed_by: str,
    ) -> PettyCashForm:
        """
        Move the requisition's form to ``status``, the next step after its current one.

        Raises:
            PettyCashFormNotApplicableError: No form has been issued.
            InvalidTransitionError: ``status`` is not the next step.
        """
        form = requisition.petty_cash_form
        if form is None:
            raise PettyCashFormNotApplicableError(str(requisition.id), "no form has been issued")

        current = PettyCashStatus(form.status)
        if PETTY_CASH_NEXT_STATUS.get(current) != status:
            raise InvalidTransitionError(
                str(requisition.id), current.value, f"mark petty-cash form {status.value}",
            )

        form.status = status.value
        self._session.flush()
        logger.info(
            "petty_cash_form_updated",
            extra={
                "requisition_id": str(requisition.id),
                "form_number": form.form_number,
                "from_status": current.value,
                "to_status": status.value,
                "changed_by": changed_by,
            },
        )
        return form.to_dto()
