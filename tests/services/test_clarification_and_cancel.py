"""
Tests for clarification rounds, cancellation and the stale-reservation
interaction with settlement.
"""

from decimal import Decimal

import pytest

from procure_kernel.domain import approval as chain_ops
from procure_kernel.domain.approval import StepStatus
from procure_kernel.domain.budget import AllocationStatus
from procure_kernel.domain.requisition import ClarificationKind, RequisitionStatus
from procure_kernel.exceptions import (
    ClarificationAlreadyPendingError,
    InvalidClarificationTargetError,
    InvalidTransitionError,
    UnauthorizedActionError,
)
from procure_kernel.services.budget_ledger import STALE_RELEASE_REASON

D = Decimal
S = RequisitionStatus


@pytest.fixture
def at_supply_chain(
    workflow, requester, requester_profile, supervisor, finance_officer,
    make_budget_code, make_draft,
):
    code = make_budget_code(total="1000000")
    req = workflow.create_requisition(requester, make_draft("600000"), requester_profile)
    req = workflow.approve_step(req.id, supervisor)
    req = workflow.verify_budget(req.id, finance_officer, code.id)
    return req, code


class TestClarification:
    def test_round_trip_resumes_prior_status(
        self, workflow, supply_chain, supervisor, at_supply_chain,
    ):
        req, _ = at_supply_chain

        asked = workflow.request_clarification(
            req.id, supply_chain, target_level=1, message="Which site needs these?",
        )

        assert asked.status == S.PENDING_CLARIFICATION
        assert asked.resume_status == S.PENDING_SUPPLY_CHAIN_REVIEW
        assert asked.approval_chain[0].status == StepStatus.NEEDS_CLARIFICATION
        assert asked.approval_chain[2].status == StepStatus.PENDING

        answered = workflow.provide_clarification(req.id, supervisor, "Douala depot.")

        assert answered.status == S.PENDING_SUPPLY_CHAIN_REVIEW
        assert answered.resume_status is None
        assert answered.approval_chain[0].status == StepStatus.CLARIFICATION_PROVIDED
        assert [c.kind for c in answered.clarifications] == [
            ClarificationKind.REQUESTED,
            ClarificationKind.RESPONDED,
        ]
        assert answered.clarifications[1].message == "Douala depot."

    def test_reservation_survives_clarification(
        self, workflow, ledger, supply_chain, finance_officer, at_supply_chain,
    ):
        req, code = at_supply_chain

        workflow.request_clarification(req.id, supply_chain, 2, "Which budget line?")
        workflow.provide_clarification(req.id, finance_officer, "OPS general.")

        assert ledger.get_budget_code(code.id).reserved == D("600000")

    def test_only_target_may_answer(self, workflow, supply_chain, finance_officer, at_supply_chain):
        req, _ = at_supply_chain
        workflow.request_clarification(req.id, supply_chain, 1, "Why now?")

        with pytest.raises(UnauthorizedActionError):
            workflow.provide_clarification(req.id, finance_officer, "Not my question.")

    def test_decision_blocked_while_waiting(self, workflow, supply_chain, at_supply_chain):
        req, _ = at_supply_chain
        workflow.request_clarification(req.id, supply_chain, 1, "Why now?")

        with pytest.raises(InvalidTransitionError):
            workflow.review_supply_chain(req.id, supply_chain, "direct_purchase")

    def test_second_question_refused(self, workflow, supply_chain, at_supply_chain):
        req, _ = at_supply_chain
        workflow.request_clarification(req.id, supply_chain, 1, "Why now?")

        with pytest.raises(InvalidTransitionError):
            workflow.request_clarification(req.id, supply_chain, 2, "And the budget?")

    def test_target_must_be_earlier_level(self, workflow, supply_chain, at_supply_chain):
        req, _ = at_supply_chain

        with pytest.raises(InvalidClarificationTargetError):
            workflow.request_clarification(req.id, supply_chain, 4, "Head?")

        assert workflow.get(req.id).status == S.PENDING_SUPPLY_CHAIN_REVIEW

    def test_only_current_approver_may_ask(self, workflow, head, at_supply_chain):
        req, _ = at_supply_chain

        with pytest.raises(UnauthorizedActionError):
            workflow.request_clarification(req.id, head, 1, "Early question")

    def test_head_can_ask_after_buyer_assignment(
        self, workflow, head, supply_chain, at_head_approval,
    ):
        req, _ = at_head_approval()

        asked = workflow.request_clarification(req.id, head, 3, "Why a tender?")
        with pytest.raises(InvalidTransitionError):
            workflow.approve_final(req.id, head)
        answered = workflow.provide_clarification(req.id, supply_chain, "Value above threshold.")

        assert asked.resume_status == S.PENDING_HEAD_APPROVAL
        assert answered.status == S.PENDING_HEAD_APPROVAL
        assert workflow.approve_final(req.id, head).status == S.APPROVED

    def test_chain_refuses_second_question(self, supply_chain, at_supply_chain):
        req, _ = at_supply_chain
        chain = chain_ops.request_clarification(
            req.approval_chain, 3, 1, "First", supply_chain.email, "Sam", req.created_at,
        )
        with pytest.raises(ClarificationAlreadyPendingError):
            chain_ops.request_clarification(
                chain, 3, 2, "Second", supply_chain.email, "Sam", req.created_at,
            )


class TestCancel:
    def test_cancel_releases_reservation(self, workflow, ledger, requester, at_supply_chain):
        req, code = at_supply_chain

        cancelled = workflow.cancel(req.id, requester, reason="No longer needed")

        assert cancelled.status == S.CANCELLED
        assert ledger.get_budget_code(code.id).reserved == D("0")
        assert ledger.get_allocation(req.reservation_id).status == AllocationStatus.RELEASED

    def test_cancel_during_clarification(self, workflow, requester, supply_chain, at_supply_chain):
        req, _ = at_supply_chain
        workflow.request_clarification(req.id, supply_chain, 1, "Why now?")

        cancelled = workflow.cancel(req.id, requester)

        assert cancelled.status == S.CANCELLED
        assert cancelled.resume_status is None

    def test_only_requester_or_admin(self, workflow, supervisor, admin, at_supply_chain):
        req, _ = at_supply_chain

        with pytest.raises(UnauthorizedActionError):
            workflow.cancel(req.id, supervisor)
        assert workflow.cancel(req.id, admin).status == S.CANCELLED

    def test_cannot_cancel_after_approval(self, workflow, requester, head, at_head_approval):
        req, _ = at_head_approval()
        workflow.approve_final(req.id, head)

        with pytest.raises(InvalidTransitionError):
            workflow.cancel(req.id, requester)


class TestStaleReservationSettlement:
    def test_settlement_replaces_a_swept_reservation(
        self, workflow, ledger, session, clock, head, buyer, at_head_approval,
    ):
        req, code = at_head_approval(amount="600000")
        req = workflow.approve_final(req.id, head)
        clock.advance_days(31)
        released = ledger.release_stale(30)
        session.commit()
        assert released.count == 1
        assert ledger.get_allocation(req.reservation_id).release_reason == STALE_RELEASE_REASON

        done = workflow.report_procurement_complete(req.id, D("590000"), buyer)

        assert done.reservation_id != req.reservation_id
        assert ledger.get_allocation(done.reservation_id).status == AllocationStatus.CONSUMED
        after = ledger.get_budget_code(code.id)
        assert after.used == D("590000")
        assert after.reserved == D("0")
