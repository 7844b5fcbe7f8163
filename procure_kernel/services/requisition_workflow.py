"""
Requisition Workflow Service (``procure_kernel.services.requisition_workflow``).

Responsibility
--------------
Drives a purchase requisition through its approval lifecycle: submission,
supervisor approvals, finance verification with budget reservation,
supply-chain review and buyer assignment, head-of-business approval,
clarification rounds, cancellation and procurement completion.  Every
status change is checked against ``REQUISITION_WORKFLOW`` and its budget
side effect runs in the same transaction as the status change.

Architecture position
---------------------
**Kernel services layer** -- the only kernel service that owns the
transaction boundary.  It composes the pure approval chain
(``domain.approval``), the ``BudgetLedgerService``, the
``SequenceService``, the ``PettyCashService`` and the ``OutboxWriter``.

Invariants enforced
-------------------
* Each public method is one unit of work: ``commit`` on success,
  ``rollback`` and re-raise on any error.  State is unchanged on failure.
* The requisition row is locked (``FOR UPDATE``) for the duration of the
  operation and its ``version`` column rejects lost updates.
* Only the approver owning the current pending step may decide it; the
  head-of-business step may also be decided by an admin.
* Notifications are written to the outbox inside the transaction.
  Collaborator calls (procurement hand-off, petty-cash rendering) never
  undo a transition.

Failure modes
-------------
* ``InvalidTransitionError`` -- action not allowed from the current status.
* ``UnauthorizedActionError`` -- principal does not own the step.
* ``StaleStateError`` -- ``expected_version`` mismatch or a concurrent
  writer committed first.
* Ledger errors (``InsufficientBudgetError`` ...) -- raised from the budget
  side effect; the requisition stays where it was.

Usage::

    service = RequisitionWorkflowService(session, policy, clock=clock)
    req = service.create_requisition(requester, draft, profile)
    req = service.approve_step(req.id, supervisor, expected_version=req.version)
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from procure_kernel.db.types import ZERO, require_positive, to_money
from procure_kernel.domain import approval as chain_ops
from procure_kernel.domain.approval import (
    ApprovalStage,
    ApprovalStep,
    ApproverRef,
    ChainOutcome,
    Decision,
    RequesterProfile,
    StepStatus,
)
from procure_kernel.domain.budget import AlertLevel, AllocationStatus, alert_level
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.collaborators import (
    PettyCashRenderer,
    ProcurementCollaborator,
)
from procure_kernel.domain.events import RequisitionEvent, to_jsonable
from procure_kernel.domain.policy import WorkflowPolicy
from procure_kernel.domain.principal import Principal, Role
from procure_kernel.domain.requisition import (
    AWAITING_DECISION_STATUSES,
    STAGE_STATUS,
    ClarificationKind,
    PaymentMethod,
    PettyCashForm,
    PettyCashStatus,
    PurchaseType,
    Requisition,
    RequisitionDraft,
    RequisitionStatus,
    SourcingType,
    validate_draft,
)
from procure_kernel.domain.workflow import REQUISITION_WORKFLOW, Action, Transition
from procure_kernel.exceptions import (
    InvalidTransitionError,
    NoClarificationPendingError,
    PettyCashFormNotApplicableError,
    RequisitionNotFoundError,
    StaleStateError,
    UnauthorizedActionError,
    ValidationError,
)
from procure_kernel.logging_config import LogContext, get_logger
from procure_kernel.models.requisition import (
    ApprovalStepModel,
    ClarificationRecordModel,
    RejectionRecordModel,
    RequisitionItemModel,
    RequisitionModel,
)
from procure_kernel.services.budget_ledger import BudgetLedgerService
from procure_kernel.services.external import report_external_failure
from procure_kernel.services.notification_dispatcher import OutboxWriter
from procure_kernel.services.petty_cash import PettyCashService
from procure_kernel.services.sequence_service import SequenceService

logger = get_logger("services.requisition_workflow")

_PETTY_CASH_STATUSES = frozenset({
    RequisitionStatus.APPROVED.value,
    RequisitionStatus.IN_PROCUREMENT.value,
    RequisitionStatus.PROCUREMENT_COMPLETE.value,
    RequisitionStatus.DELIVERED.value,
})


class RequisitionWorkflowService:
    """
    Orchestrates requisition transitions and their budget side effects.

    Contract
    --------
    * Every mutating method takes the acting ``Principal`` and returns the
      committed ``Requisition`` snapshot.
    * ``expected_version`` (optional) must equal the snapshot version the
      caller last read; a mismatch raises ``StaleStateError``.  Without it
      a decision is judged against whatever state is committed when its
      row lock is granted.

    Guarantees
    ----------
    * A transition and its ledger effect commit together or not at all.
    * Clock is injectable for deterministic testing.

    Non-goals
    ---------
    * Does NOT authenticate; the principal is trusted input.
    * Does NOT deliver notifications; ``NotificationDispatcher`` drains the
      outbox.
    """

    def __init__(
        self,
        session: Session,
        policy: WorkflowPolicy,
        clock: Clock | None = None,
        procurement: ProcurementCollaborator | None = None,
        petty_cash_renderer: PettyCashRenderer | None = None,
    ):
        self._session = session
        self._policy = policy
        self._clock = clock or SystemClock()
        self._procurement = procurement

        self._ledger = BudgetLedgerService(session, self._clock)
        self._sequences = SequenceService(session)
        self._outbox = OutboxWriter(session, self._clock)
        self._petty_cash = PettyCashService(
            session,
            self._clock,
            prefix=policy.petty_cash_prefix,
            renderer=petty_cash_renderer,
        )

    # =========================================================================
    # Unit of work
    # =========================================================================

    @contextmanager
    def _transaction(
        self,
        operation: str,
        principal: Principal | None,
        requisition_id: UUID | None = None,
    ) -> Iterator[None]:
        with LogContext.bind(
            actor_id=principal.user_id if principal else None,
            requisition_id=requisition_id,
        ):
            try:
                yield
                self._session.commit()
            except StaleDataError as exc:
                self._session.rollback()
                logger.warning(
                    "requisition_operation_rolled_back",
                    extra={"operation": operation, "reason": "stale_data"},
                    exc_info=True,
                )
                raise StaleStateError("Requisition", str(requisition_id)) from exc
            except Exception:
                self._session.rollback()
                logger.warning(
                    "requisition_operation_rolled_back",
                    extra={"operation": operation},
                    exc_info=True,
                )
                raise

    def _load(
        self,
        requisition_id: UUID,
        expected_version: int | None = None,
    ) -> RequisitionModel:
        """
        Lock the requisition row and check ``expected_version``.

        Without ``expected_version`` two conflicting decisions are simply
        serialized by the row lock: the second one sees the state the first
        committed and fails on that state, with
        ``InvalidTransitionError`` when nothing is left to decide, or
        ``UnauthorizedActionError`` when the step has moved to someone
        else.  Callers that need ``StaleStateError`` for such a race pass
        the version they read.
        """
        model = self._session.execute(
            select(RequisitionModel)
            .where(RequisitionModel.id == requisition_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise RequisitionNotFoundError(str(requisition_id))
        if expected_version is not None and model.version != expected_version:
            raise StaleStateError(
                "Requisition",
                str(requisition_id),
                expected_version=expected_version,
                actual_version=model.version,
            )
        return model

    def _flush(self, model: RequisitionModel) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            raise StaleStateError("Requisition", str(model.id)) from exc

    # =========================================================================
    # Guards and bookkeeping
    # =========================================================================

    @staticmethod
    def _require(
        model: RequisitionModel,
        action: Action,
        to_state: RequisitionStatus | str | None = None,
    ) -> Transition:
        target = RequisitionStatus(to_state).value if to_state is not None else None
        transition = REQUISITION_WORKFLOW.find(model.status, action.value, target)
        if transition is None:
            raise InvalidTransitionError(str(model.id), model.status, action.value)
        return transition

    @staticmethod
    def _require_current_approver(
        model: RequisitionModel,
        principal: Principal,
        action: Action,
    ) -> ApprovalStep:
        step = chain_ops.current_step(model.chain())
        if step is None:
            raise InvalidTransitionError(str(model.id), model.status, action.value)
        if principal.is_email(step.approver.email):
            return step
        if step.stage == ApprovalStage.HEAD and principal.role == Role.ADMIN:
            return step
        raise UnauthorizedActionError(
            principal.email,
            action.value,
            f"level {step.level} ({step.stage.value}) belongs to {step.approver.email}",
        )

    @staticmethod
    def _require_stage(
        model: RequisitionModel,
        step: ApprovalStep,
        stage: ApprovalStage,
        action: Action,
    ) -> None:
        if step.stage != stage:
            raise InvalidTransitionError(str(model.id), model.status, action.value)

    @staticmethod
    def _require_requester(
        model: RequisitionModel,
        principal: Principal,
        action: Action,
    ) -> None:
        if principal.user_id == model.requester_id or principal.is_email(model.requester_email):
            return
        if principal.role == Role.ADMIN:
            return
        raise UnauthorizedActionError(
            principal.email, action.value, "only the requester may do this"
        )

    @staticmethod
    def _write_chain(
        model: RequisitionModel,
        chain: tuple[ApprovalStep, ...],
    ) -> None:
        chain_ops.check_chain_consistency(chain)
        rows = {row.level: row for row in model.steps}
        for step in chain:
            rows[step.level].apply(step)

    def _touch(
        self,
        model: RequisitionModel,
        transition: Transition,
        principal: Principal | None,
    ) -> None:
        previous = model.status
        model.status = transition.to_state
        model.last_action = transition.action
        model.last_action_at = self._clock.now()
        if principal is not None:
            model.updated_by_id = principal.user_id
        logger.info(
            "requisition_transitioned",
            extra={
                "requisition_number": model.number,
                "action": transition.action,
                "from_status": previous,
                "to_status": transition.to_state,
            },
        )

    def _emit(
        self,
        event: RequisitionEvent,
        model: RequisitionModel,
        principal: Principal | None,
        **details: object,
    ) -> Requisition:
        """Flush, snapshot and record the notification. Returns the snapshot."""
        self._flush(model)
        snapshot = model.to_dto()
        self._outbox.record(
            event,
            model.id,
            {
                "event": event.value,
                "actor_email": principal.email if principal else None,
                "requisition": to_jsonable(snapshot),
                **{k: to_jsonable(v) for k, v in details.items()},
            },
        )
        return snapshot

    def _release_if_reserved(self, model: RequisitionModel, reason: str) -> None:
        if model.reservation_id is None:
            return
        allocation = self._ledger.get_allocation(model.reservation_id)
        if allocation.status == AllocationStatus.ALLOCATED:
            self._ledger.release(model.reservation_id, reason)

    def _settle(self, model: RequisitionModel, amount: Decimal) -> None:
        """
        Bring the ledger in line with a final amount.

        Allocated reservations are committed, consumed ones reconciled.  A
        reservation released in the meantime (stale sweep) is replaced by a
        fresh reserve-and-commit on the same code.
        """
        allocation = None
        if model.reservation_id is not None:
            allocation = self._ledger.get_allocation(model.reservation_id)

        if allocation is not None and allocation.status == AllocationStatus.ALLOCATED:
            self._ledger.commit(allocation.id, amount)
        elif allocation is not None and allocation.status == AllocationStatus.CONSUMED:
            self._ledger.reconcile(allocation.id, amount)
        elif model.budget_code_id is not None and amount > ZERO:
            logger.info(
                "reservation_replaced",
                extra={
                    "previous_reservation_id": str(model.reservation_id),
                    "amount": str(amount),
                },
            )
            reservation_id = self._ledger.reserve(model.budget_code_id, amount, model.id)
            model.reservation_id = reservation_id
            self._ledger.commit(reservation_id, amount)

    def _check_threshold(
        self,
        model: RequisitionModel,
        before: Decimal,
        principal: Principal | None,
    ) -> None:
        if model.budget_code_id is None:
            return
        code = self._ledger.get_budget_code(model.budget_code_id)
        warning = self._policy.warning_threshold
        critical = self._policy.critical_threshold
        level = alert_level(code.utilization_percentage, warning, critical)
        if level == AlertLevel.NONE or level == alert_level(before, warning, critical):
            return
        logger.warning(
            "budget_threshold_reached",
            extra={
                "budget_code": code.code,
                "alert_level": level.value,
                "utilization_percentage": str(code.utilization_percentage),
            },
        )
        self._outbox.record(
            RequisitionEvent.BUDGET_THRESHOLD_REACHED,
            model.id,
            {
                "event": RequisitionEvent.BUDGET_THRESHOLD_REACHED.value,
                "budget_code": code.code,
                "alert_level": level.value,
                "utilization_percentage": str(code.utilization_percentage),
                "remaining": str(code.remaining),
                "actor_email": principal.email if principal else None,
            },
        )

    def _utilization(self, model: RequisitionModel) -> Decimal:
        if model.budget_code_id is None:
            return ZERO
        return self._ledger.get_budget_code(model.budget_code_id).utilization_percentage

    # =========================================================================
    # Creation and submission
    # =========================================================================

    def create_requisition(
        self,
        principal: Principal,
        draft: RequisitionDraft,
        requester_profile: RequesterProfile | None = None,
        submit: bool = True,
    ) -> Requisition:
        """
        Persist a new requisition with its approval chain.

        The chain is derived once, from ``requester_profile`` (the reporting
        line) and the configured roster.  With ``submit=False`` the
        requisition stays in ``draft`` and every step is ``waiting``.
        """
        draft = validate_draft(draft, self._policy.min_justification_length)
        profile = requester_profile or RequesterProfile(
            email=principal.email,
            name=principal.full_name,
            department=principal.department,
        )
        if not principal.is_email(profile.email):
            raise ValidationError(
                "requester_profile", "profile email does not match the principal"
            )

        chain = chain_ops.build_chain(profile, self._policy.roster)
        if not submit:
            chain = tuple(replace(step, status=StepStatus.WAITING) for step in chain)

        with self._transaction("create_requisition", principal):
            now = self._clock.now()
            model = RequisitionModel(
                number=self._sequences.next_document_number(
                    self._policy.requisition_prefix, now
                ),
                requester_id=principal.user_id,
                requester_email=principal.email,
                requester_name=profile.name,
                department=profile.department,
                title=draft.title,
                justification=draft.justification,
                delivery_location=draft.delivery_location,
                expected_date=draft.expected_date,
                requested_amount=draft.amount,
                currency=draft.currency or self._policy.currency,
                urgency=draft.urgency.value,
                payment_method=draft.payment_method.value,
                purchase_type=draft.purchase_type.value,
                status=RequisitionStatus.DRAFT.value,
                created_at=now,
                created_by_id=principal.user_id,
            )
            model.items = [
                RequisitionItemModel(
                    line_number=index,
                    description=item.description,
                    quantity=item.quantity,
                    unit=item.unit,
                    estimated_unit_price=item.estimated_unit_price,
                )
                for index, item in enumerate(draft.items, start=1)
            ]
            self._session.add(model)
            self._flush(model)
            model.steps = [ApprovalStepModel.from_dto(model.id, step) for step in chain]

            logger.info(
                "requisition_created",
                extra={
                    "requisition_id": str(model.id),
                    "requisition_number": model.number,
                    "amount": str(model.requested_amount),
                    "chain_length": len(chain),
                },
            )
            if submit:
                snapshot = self._submit(model, principal)
            else:
                self._flush(model)
                snapshot = model.to_dto()
        return snapshot

    def submit(
        self,
        requisition_id: UUID,
        principal: Principal,
        expected_version: int | None = None,
    ) -> Requisition:
        """Send a draft into its approval chain."""
        with self._transaction("submit", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            self._require_requester(model, principal, Action.SUBMIT)
            chain = model.chain()
            if chain and chain[0].status == StepStatus.WAITING:
                chain = (replace(chain[0], status=StepStatus.PENDING), *chain[1:])
                self._write_chain(model, chain)
            snapshot = self._submit(model, principal)
        return snapshot

    def _submit(self, model: RequisitionModel, principal: Principal) -> Requisition:
        first = chain_ops.current_step(model.chain())
        if first is None:
            raise InvalidTransitionError(str(model.id), model.status, Action.SUBMIT.value)
        transition = self._require(model, Action.SUBMIT, STAGE_STATUS[first.stage])
        self._touch(model, transition, principal)
        logger.info(
            "requisition_submitted",
            extra={
                "requisition_number": model.number,
                "first_approver": first.approver.email,
            },
        )
        return self._emit(
            RequisitionEvent.SUBMITTED,
            model,
            principal,
            next_approver=first.approver,
        )

    # =========================================================================
    # Decisions
    # =========================================================================

    def approve_step(
        self,
        requisition_id: UUID,
        principal: Principal,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """Supervisor approval of the current supervisor level."""
        with self._transaction("approve_step", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            if model.status != RequisitionStatus.PENDING_SUPERVISOR.value:
                raise InvalidTransitionError(str(model.id), model.status, Action.APPROVE.value)
            step = self._require_current_approver(model, principal, Action.APPROVE)
            self._require_stage(model, step, ApprovalStage.SUPERVISOR, Action.APPROVE)

            result = chain_ops.advance(
                model.chain(), step.level, Decision.APPROVE,
                principal.email, self._clock.now(), comments,
            )
            if result.next_step is None:
                raise InvalidTransitionError(str(model.id), model.status, Action.APPROVE.value)
            transition = self._require(
                model, Action.APPROVE, STAGE_STATUS[result.next_step.stage]
            )
            self._write_chain(model, result.chain)
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.STEP_APPROVED,
                model,
                principal,
                level=step.level,
                next_approver=result.next_step.approver,
            )
        return snapshot

    def reject(
        self,
        requisition_id: UUID,
        principal: Principal,
        reason: str,
        expected_version: int | None = None,
    ) -> Requisition:
        """
        Reject at the current level.

        Supply-chain rejections end in ``supply_chain_rejected``; all others
        in ``rejected``.  Any held reservation is released.
        """
        if not reason or not reason.strip():
            raise ValidationError("reason", "a rejection reason is required")

        with self._transaction("reject", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            if model.status not in {s.value for s in AWAITING_DECISION_STATUSES}:
                raise InvalidTransitionError(str(model.id), model.status, Action.REJECT.value)
            step = self._require_current_approver(model, principal, Action.REJECT)

            now = self._clock.now()
            result = chain_ops.advance(
                model.chain(), step.level, Decision.REJECT,
                principal.email, now, reason.strip(),
            )
            if step.stage == ApprovalStage.SUPPLY_CHAIN:
                target, event = RequisitionStatus.SUPPLY_CHAIN_REJECTED, RequisitionEvent.SUPPLY_CHAIN_REJECTED
            else:
                target, event = RequisitionStatus.REJECTED, RequisitionEvent.REJECTED
            transition = self._require(model, Action.REJECT, target)

            self._record_decision(model, step, "reject", principal, reason.strip())
            self._write_chain(model, result.chain)
            model.rejections.append(
                RejectionRecordModel(
                    requisition_id=model.id,
                    stage=step.stage.value,
                    level=step.level,
                    rejected_by=principal.email,
                    reason=reason.strip(),
                    rejected_at=now,
                )
            )
            if transition.budget_effect is not None:
                self._release_if_reserved(model, transition.to_state)
            self._touch(model, transition, principal)
            snapshot = self._emit(event, model, principal, level=step.level, reason=reason.strip())
        return snapshot

    def _record_decision(
        self,
        model: RequisitionModel,
        step: ApprovalStep,
        decision: str,
        principal: Principal,
        comments: str | None,
    ) -> None:
        now = self._clock.now()
        if step.stage == ApprovalStage.FINANCE:
            model.finance_decision = decision
            model.finance_budget_available = decision == "approve"
            model.finance_comments = comments
            model.finance_verified_by = principal.email
            model.finance_verified_at = now
        elif step.stage == ApprovalStage.SUPPLY_CHAIN:
            model.supply_chain_decision = decision
            model.supply_chain_comments = comments
            model.supply_chain_reviewed_by = principal.email
            model.supply_chain_reviewed_at = now
        elif step.stage == ApprovalStage.HEAD:
            model.head_decision = decision
            model.head_comments = comments
            model.head_decided_by = principal.email
            model.head_decided_at = now

    def verify_budget(
        self,
        requisition_id: UUID,
        principal: Principal,
        budget_code_id: UUID,
        verified_amount: Decimal | None = None,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """
        Finance approval: reserve the verified amount on ``budget_code_id``.

        The reservation and the move to ``pending_supply_chain_review``
        commit together.  A ledger failure leaves the requisition in
        ``pending_finance_verification``.
        """
        with self._transaction("verify_budget", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            step = self._require_current_approver(model, principal, Action.VERIFY_BUDGET)
            self._require_stage(model, step, ApprovalStage.FINANCE, Action.VERIFY_BUDGET)

            amount = model.requested_amount
            if verified_amount is not None:
                amount = require_positive(to_money(verified_amount, "verified_amount"), "verified_amount")

            result = chain_ops.advance(
                model.chain(), step.level, Decision.APPROVE,
                principal.email, self._clock.now(), comments,
            )
            next_status = (
                STAGE_STATUS[result.next_step.stage] if result.next_step else None
            )
            transition = self._require(model, Action.VERIFY_BUDGET, next_status)

            available = self._ledger.get_budget_code(budget_code_id).remaining
            reservation_id = self._ledger.reserve(budget_code_id, amount, model.id)

            self._record_decision(model, step, "approve", principal, comments)
            model.finance_verified_amount = amount
            model.finance_available_at_verification = available
            model.budget_code_id = budget_code_id
            model.reservation_id = reservation_id
            self._write_chain(model, result.chain)
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.FINANCE_VERIFIED,
                model,
                principal,
                reserved_amount=amount,
            )
        return snapshot

    def review_supply_chain(
        self,
        requisition_id: UUID,
        principal: Principal,
        sourcing_type: SourcingType,
        purchase_type: PurchaseType | None = None,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """Accept the supply-chain review; the step stays pending for buyer assignment."""
        with self._transaction("review_supply_chain", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            transition = self._require(model, Action.ACCEPT_REVIEW)
            step = self._require_current_approver(model, principal, Action.ACCEPT_REVIEW)
            self._require_stage(model, step, ApprovalStage.SUPPLY_CHAIN, Action.ACCEPT_REVIEW)

            self._record_decision(model, step, "approve", principal, comments)
            model.sourcing_type = SourcingType(sourcing_type).value
            model.assigned_purchase_type = (
                PurchaseType(purchase_type).value if purchase_type is not None else model.purchase_type
            )
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.SUPPLY_CHAIN_ACCEPTED,
                model,
                principal,
                sourcing_type=model.sourcing_type,
            )
        return snapshot

    def assign_buyer(
        self,
        requisition_id: UUID,
        principal: Principal,
        buyer: ApproverRef,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """Assign the buyer, sign off the supply-chain step and go to the head."""
        with self._transaction("assign_buyer", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            step = self._require_current_approver(model, principal, Action.ASSIGN_BUYER)
            self._require_stage(model, step, ApprovalStage.SUPPLY_CHAIN, Action.ASSIGN_BUYER)

            now = self._clock.now()
            result = chain_ops.advance(
                model.chain(), step.level, Decision.APPROVE,
                principal.email, now, comments or model.supply_chain_comments,
            )
            next_status = (
                STAGE_STATUS[result.next_step.stage] if result.next_step else None
            )
            transition = self._require(model, Action.ASSIGN_BUYER, next_status)

            model.assigned_buyer_email = buyer.email
            model.assigned_buyer_name = buyer.name
            model.buyer_assigned_by = principal.email
            model.buyer_assigned_at = now
            self._write_chain(model, result.chain)
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.BUYER_ASSIGNED,
                model,
                principal,
                buyer=buyer,
            )
        return snapshot

    def approve_final(
        self,
        requisition_id: UUID,
        principal: Principal,
        final_amount: Decimal | None = None,
        comments: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """
        Head-of-business approval.

        With ``final_amount`` the reservation is committed at that amount.
        A cash requisition without one is committed at the verified amount,
        since petty cash never goes through procurement; its form is issued
        after the commit.  A bank requisition without ``final_amount`` stays
        allocated until procurement reports the actual cost.
        The procurement collaborator is told after the commit.
        """
        with self._transaction("approve_final", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            step = self._require_current_approver(model, principal, Action.APPROVE)
            self._require_stage(model, step, ApprovalStage.HEAD, Action.APPROVE)
            transition = self._require(model, Action.APPROVE, RequisitionStatus.APPROVED)

            result = chain_ops.advance(
                model.chain(), step.level, Decision.APPROVE,
                principal.email, self._clock.now(), comments,
            )
            if result.outcome != ChainOutcome.COMPLETE:
                raise InvalidTransitionError(str(model.id), model.status, Action.APPROVE.value)

            self._record_decision(model, step, "approve", principal, comments)
            approved_amount = model.finance_verified_amount or model.requested_amount
            paid_in_cash = model.payment_method == PaymentMethod.CASH.value
            if final_amount is not None:
                approved_amount = to_money(final_amount, "final_amount")
                model.head_final_amount = approved_amount
            if final_amount is not None or paid_in_cash:
                before = self._utilization(model)
                self._settle(model, approved_amount)
                self._check_threshold(model, before, principal)

            self._write_chain(model, result.chain)
            self._touch(model, transition, principal)
            self._flush(model)

            form = None
            if paid_in_cash:
                form = self._petty_cash.generate(model, principal.email)

            snapshot = self._emit(
                RequisitionEvent.APPROVED,
                model,
                principal,
                approved_amount=approved_amount,
            )
            if form is not None:
                self._outbox.record(
                    RequisitionEvent.PETTY_CASH_FORM_GENERATED,
                    model.id,
                    {
                        "event": RequisitionEvent.PETTY_CASH_FORM_GENERATED.value,
                        "form": to_jsonable(form),
                        "requisition": to_jsonable(snapshot),
                    },
                )

        self._hand_off(snapshot, approved_amount)
        return snapshot

    def _hand_off(self, snapshot: Requisition, approved_amount: Decimal) -> None:
        if self._procurement is None:
            return
        try:
            self._procurement.on_requisition_approved(snapshot.id, approved_amount)
        except Exception as exc:
            report_external_failure(
                logger,
                "procurement",
                "on_requisition_approved",
                exc,
                requisition_id=snapshot.id,
            )

    # =========================================================================
    # Clarification
    # =========================================================================

    def request_clarification(
        self,
        requisition_id: UUID,
        principal: Principal,
        target_level: int,
        message: str,
        expected_version: int | None = None,
    ) -> Requisition:
        """The current approver asks an earlier, signed-off level a question."""
        with self._transaction("request_clarification", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            transition = self._require(model, Action.REQUEST_CLARIFICATION)
            step = self._require_current_approver(model, principal, Action.REQUEST_CLARIFICATION)

            now = self._clock.now()
            chain = chain_ops.request_clarification(
                model.chain(), step.level, target_level, message,
                principal.email, principal.full_name, now,
            )
            target = chain_ops.step_at(chain, target_level)

            model.resume_status = model.status
            self._write_chain(model, chain)
            model.clarifications.append(
                ClarificationRecordModel(
                    requisition_id=model.id,
                    kind=ClarificationKind.REQUESTED.value,
                    from_level=step.level,
                    to_level=target_level,
                    actor_email=principal.email,
                    message=message.strip(),
                    recorded_at=now,
                )
            )
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.CLARIFICATION_REQUESTED,
                model,
                principal,
                from_level=step.level,
                to_level=target_level,
                recipient=target.approver,
                message=message.strip(),
            )
        return snapshot

    def provide_clarification(
        self,
        requisition_id: UUID,
        principal: Principal,
        response: str,
        expected_version: int | None = None,
    ) -> Requisition:
        """Answer the outstanding clarification and resume the prior status."""
        with self._transaction("provide_clarification", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            if model.status != RequisitionStatus.PENDING_CLARIFICATION.value:
                raise InvalidTransitionError(
                    str(model.id), model.status, Action.PROVIDE_CLARIFICATION.value
                )
            target = chain_ops.outstanding_clarification(model.chain())
            if target is None or model.resume_status is None:
                raise NoClarificationPendingError()
            if not principal.is_email(target.approver.email):
                raise UnauthorizedActionError(
                    principal.email,
                    Action.PROVIDE_CLARIFICATION.value,
                    f"clarification is addressed to {target.approver.email}",
                )
            transition = self._require(model, Action.PROVIDE_CLARIFICATION, model.resume_status)

            now = self._clock.now()
            chain = chain_ops.provide_clarification(
                model.chain(), target.level, response, principal.email, now,
            )
            asked_by = target.clarification_request.requested_by_level
            self._write_chain(model, chain)
            model.clarifications.append(
                ClarificationRecordModel(
                    requisition_id=model.id,
                    kind=ClarificationKind.RESPONDED.value,
                    from_level=target.level,
                    to_level=asked_by,
                    actor_email=principal.email,
                    message=response.strip(),
                    recorded_at=now,
                )
            )
            model.resume_status = None
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.CLARIFICATION_PROVIDED,
                model,
                principal,
                from_level=target.level,
                to_level=asked_by,
            )
        return snapshot

    # =========================================================================
    # Cancellation and procurement
    # =========================================================================

    def cancel(
        self,
        requisition_id: UUID,
        principal: Principal,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """Requester withdraws the requisition; any reservation is released."""
        with self._transaction("cancel", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            self._require_requester(model, principal, Action.CANCEL)
            transition = self._require(model, Action.CANCEL)

            self._release_if_reserved(model, RequisitionStatus.CANCELLED.value)
            model.resume_status = None
            self._touch(model, transition, principal)
            snapshot = self._emit(RequisitionEvent.CANCELLED, model, principal, reason=reason)
        return snapshot

    def _require_procurement_actor(
        self,
        model: RequisitionModel,
        principal: Principal,
        action: Action,
    ) -> None:
        if principal.role == Role.ADMIN:
            return
        if principal.is_email(model.assigned_buyer_email):
            return
        if principal.is_email(self._policy.roster.supply_chain_coordinator.email):
            return
        raise UnauthorizedActionError(
            principal.email, action.value, "only the assigned buyer or supply chain may do this"
        )

    def start_procurement(
        self,
        requisition_id: UUID,
        principal: Principal,
        expected_version: int | None = None,
    ) -> Requisition:
        with self._transaction("start_procurement", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            transition = self._require(model, Action.START_PROCUREMENT)
            self._require_procurement_actor(model, principal, Action.START_PROCUREMENT)
            self._touch(model, transition, principal)
            snapshot = self._emit(RequisitionEvent.PROCUREMENT_STARTED, model, principal)
        return snapshot

    def report_procurement_complete(
        self,
        requisition_id: UUID,
        actual_cost: Decimal,
        principal: Principal | None = None,
        expected_version: int | None = None,
    ) -> Requisition:
        """
        Procurement callback with the actual cost.

        Commits the reservation at ``actual_cost``, or reconciles it when
        the head already committed a final amount.
        """
        actual = to_money(actual_cost, "actual_cost")
        if actual < ZERO:
            raise ValidationError("actual_cost", "cannot be negative")

        with self._transaction("report_procurement_complete", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            transition = self._require(model, Action.COMPLETE_PROCUREMENT)
            if principal is not None:
                self._require_procurement_actor(model, principal, Action.COMPLETE_PROCUREMENT)

            before = self._utilization(model)
            self._settle(model, actual)
            self._check_threshold(model, before, principal)

            model.actual_cost = actual
            model.procurement_completed_at = self._clock.now()
            self._touch(model, transition, principal)
            snapshot = self._emit(
                RequisitionEvent.PROCUREMENT_COMPLETED,
                model,
                principal,
                actual_cost=actual,
            )
        return snapshot

    def confirm_delivery(
        self,
        requisition_id: UUID,
        principal: Principal,
        expected_version: int | None = None,
    ) -> Requisition:
        with self._transaction("confirm_delivery", principal, requisition_id):
            model = self._load(requisition_id, expected_version)
            transition = self._require(model, Action.CONFIRM_DELIVERY)
            if not (
                principal.is_email(model.requester_email)
                or principal.is_email(model.assigned_buyer_email)
                or principal.role == Role.ADMIN
            ):
                raise UnauthorizedActionError(
                    principal.email,
                    Action.CONFIRM_DELIVERY.value,
                    "only the requester or the assigned buyer may confirm delivery",
                )
            model.delivered_at = self._clock.now()
            self._touch(model, transition, principal)
            snapshot = self._emit(RequisitionEvent.DELIVERED, model, principal)
        return snapshot

    def regenerate_petty_cash_form(
        self,
        requisition_id: UUID,
        principal: Principal,
    ) -> PettyCashForm | None:
        """
        Retry petty-cash form generation after a failed attempt.

        Returns the existing form if one was already issued, or None if
        generation failed again (logged).
        """
        with self._transaction("regenerate_petty_cash_form", principal, requisition_id):
            model = self._load(requisition_id)
            if model.payment_method != PaymentMethod.CASH.value:
                raise PettyCashFormNotApplicableError(str(model.id), "payment method is not cash")
            if model.status not in _PETTY_CASH_STATUSES:
                raise PettyCashFormNotApplicableError(
                    str(model.id), f"requisition is {model.status}"
                )
            if not (
                principal.role in (Role.FINANCE, Role.ADMIN)
                or principal.is_email(self._policy.roster.finance_officer.email)
                or principal.is_email(self._policy.roster.head_of_business.email)
            ):
                raise UnauthorizedActionError(
                    principal.email, "regenerate_petty_cash_form", "finance or head only"
                )

            existing = model.petty_cash_form is not None
            form = self._petty_cash.generate(model, principal.email)
            if form is not None and not existing:
                self._flush(model)
                self._outbox.record(
                    RequisitionEvent.PETTY_CASH_FORM_GENERATED,
                    model.id,
                    {
                        "event": RequisitionEvent.PETTY_CASH_FORM_GENERATED.value,
                        "form": to_jsonable(form),
                        "requisition": to_jsonable(model.to_dto()),
                    },
                )
        return form

    def update_petty_cash_form(
        self,
        requisition_id: UUID,
        principal: Principal,
        status: PettyCashStatus,
    ) -> PettyCashForm:
        """
        Record the next step of a petty-cash form.

        Finance hands over the cash (``disbursed``); the assigned buyer
        submits receipts; the buyer or finance closes the form
        (``completed``).  Admins may record any step.
        """
        with self._transaction("update_petty_cash_form", principal, requisition_id):
            model = self._load(requisition_id)
            status = PettyCashStatus(status)
            is_finance = principal.role == Role.FINANCE or principal.is_email(
                self._policy.roster.finance_officer.email
            )
            is_buyer = principal.is_email(model.assigned_buyer_email)
            allowed = {
                PettyCashStatus.DISBURSED: is_finance,
                PettyCashStatus.RECEIPTS_SUBMITTED: is_buyer,
                PettyCashStatus.COMPLETED: is_buyer or is_finance,
            }.get(status, False)
            if not (allowed or principal.role == Role.ADMIN):
                raise UnauthorizedActionError(
                    principal.email,
                    f"mark petty-cash form {status.value}",
                    "not the assigned buyer or finance",
                )

            form = self._petty_cash.advance(model, status, principal.email)
            self._outbox.record(
                RequisitionEvent.PETTY_CASH_FORM_UPDATED,
                model.id,
                {
                    "event": RequisitionEvent.PETTY_CASH_FORM_UPDATED.value,
                    "actor_email": principal.email,
                    "form": to_jsonable(form),
                },
            )
        return form

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, requisition_id: UUID) -> Requisition:
        model = self._session.get(RequisitionModel, requisition_id)
        if model is None:
            raise RequisitionNotFoundError(str(requisition_id))
        return model.to_dto()

    def allowed_actions(self, requisition_id: UUID) -> frozenset[str]:
        """Actions the state machine allows from the current status."""
        model = self._session.get(RequisitionModel, requisition_id)
        if model is None:
            raise RequisitionNotFoundError(str(requisition_id))
        return REQUISITION_WORKFLOW.allowed_actions(model.status)
