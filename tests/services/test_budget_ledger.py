"""
Tests for BudgetLedgerService.

Reserve / commit / release / reconcile against a real database, plus the
stale-reservation sweep and budget administration.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from procure_kernel.domain.budget import AllocationStatus, BudgetPeriod
from procure_kernel.exceptions import (
    BudgetCodeInactiveError,
    BudgetCodeNotFoundError,
    DuplicateBudgetCodeError,
    DuplicateReservationError,
    ImmutabilityViolationError,
    InsufficientBudgetError,
    ReservationNotFoundError,
    ValidationError,
)
from procure_kernel.models.budget_code import BudgetCodeModel
from procure_kernel.selectors.budget_selector import BudgetSelector
from procure_kernel.services.budget_ledger import STALE_RELEASE_REASON

D = Decimal


class TestBudgetCodeAdministration:
    def test_create(self, ledger, session, actor_id):
        code = ledger.create_budget_code(
            code="ops-2024",
            name="Operations 2024",
            department="Operations",
            total_budget=D("1000000"),
            actor_id=actor_id,
            budget_period=BudgetPeriod.QUARTERLY,
            start_date=date(2024, 2, 1),
        )
        session.commit()

        assert code.code == "OPS-2024"
        assert code.total_budget == D("1000000")
        assert code.used == D("0")
        assert code.reserved == D("0")
        assert code.active
        assert code.end_date == date(2024, 3, 31)

    def test_duplicate_code(self, ledger, make_budget_code, actor_id):
        make_budget_code(code="OPS-001")

        with pytest.raises(DuplicateBudgetCodeError):
            ledger.create_budget_code("ops-001", "Again", "Operations", D("1"), actor_id)

    def test_float_total_refused(self, ledger, actor_id):
        with pytest.raises(ValidationError):
            ledger.create_budget_code("OPS-9", "Floaty", "Operations", 1000.0, actor_id)

    def test_update_budget_records_history(self, ledger, session, make_budget_code, actor_id):
        code = make_budget_code(total="1000000")

        updated = ledger.update_budget(code.id, D("1500000"), "Mid-year top up", actor_id)
        session.commit()

        assert updated.total_budget == D("1500000")
        history = BudgetSelector(session).history(code.id)
        assert len(history) == 1
        assert history[0].previous_total == D("1000000")
        assert history[0].new_total == D("1500000")
        assert history[0].reason == "Mid-year top up"

    def test_update_budget_requires_reason(self, ledger, make_budget_code, actor_id):
        code = make_budget_code()
        with pytest.raises(ValidationError):
            ledger.update_budget(code.id, D("5"), "  ", actor_id)

    def test_update_cannot_undercut_reservations(self, ledger, make_budget_code, actor_id):
        code = make_budget_code(total="1000")
        ledger.reserve(code.id, D("800"), uuid4())

        with pytest.raises(ValidationError):
            ledger.update_budget(code.id, D("700"), "Cut", actor_id)

    def test_deactivated_code_refuses_reservations(self, ledger, make_budget_code, actor_id):
        code = make_budget_code()
        ledger.deactivate(code.id, actor_id)

        with pytest.raises(BudgetCodeInactiveError):
            ledger.reserve(code.id, D("10"), uuid4())

    def test_budget_codes_are_never_deleted(self, session, make_budget_code):
        code = make_budget_code()
        model = session.get(BudgetCodeModel, code.id)

        session.delete(model)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_unknown_code(self, ledger):
        with pytest.raises(BudgetCodeNotFoundError):
            ledger.reserve(uuid4(), D("10"), uuid4())


class TestReserve:
    def test_reserve_holds_amount(self, ledger, session, make_budget_code):
        code = make_budget_code(total="1000000")
        requisition_id = uuid4()

        reservation_id = ledger.reserve(code.id, D("600000"), requisition_id)
        session.commit()

        after = ledger.get_budget_code(code.id)
        assert after.reserved == D("600000")
        assert after.remaining == D("400000")
        allocation = ledger.get_allocation(reservation_id)
        assert allocation.status == AllocationStatus.ALLOCATED
        assert allocation.requisition_id == requisition_id
        assert ledger.active_reservation_for(requisition_id).id == reservation_id

    def test_insufficient_budget_leaves_code_untouched(self, ledger, make_budget_code):
        code = make_budget_code(total="1000000")
        ledger.reserve(code.id, D("600000"), uuid4())

        with pytest.raises(InsufficientBudgetError) as exc_info:
            ledger.reserve(code.id, D("500000"), uuid4())

        assert exc_info.value.code == "INSUFFICIENT_BUDGET"
        assert ledger.get_budget_code(code.id).reserved == D("600000")

    def test_one_active_reservation_per_requisition(self, ledger, make_budget_code):
        code = make_budget_code()
        requisition_id = uuid4()
        ledger.reserve(code.id, D("10"), requisition_id)

        with pytest.raises(DuplicateReservationError):
            ledger.reserve(code.id, D("10"), requisition_id)

    @pytest.mark.parametrize("amount", [D("0"), D("-5")])
    def test_amount_must_be_positive(self, ledger, make_budget_code, amount):
        code = make_budget_code()
        with pytest.raises(ValidationError):
            ledger.reserve(code.id, amount, uuid4())

    def test_logs_reservation(self, ledger, make_budget_code, captured_logs):
        code = make_budget_code()
        requisition_id = uuid4()

        ledger.reserve(code.id, D("10"), requisition_id)

        record = next(r for r in captured_logs() if r["message"] == "budget_reserved")
        assert record["budget_code"] == code.code
        assert record["requisition_id"] == str(requisition_id)
        assert record["amount"] == "10.00"


class TestCommitReleaseReconcile:
    def test_commit_at_lower_actual(self, ledger, session, make_budget_code):
        code = make_budget_code(total="1000000")
        reservation_id = ledger.reserve(code.id, D("600000"), uuid4())

        allocation = ledger.commit(reservation_id, D("550000"))
        session.commit()

        assert allocation.status == AllocationStatus.CONSUMED
        assert allocation.actual_amount == D("550000")
        after = ledger.get_budget_code(code.id)
        assert after.used == D("550000")
        assert after.reserved == D("0")
        assert after.remaining == D("450000")

    def test_commit_twice_refused(self, ledger, make_budget_code):
        code = make_budget_code()
        reservation_id = ledger.reserve(code.id, D("10"), uuid4())
        ledger.commit(reservation_id, D("10"))

        with pytest.raises(ReservationNotFoundError):
            ledger.commit(reservation_id, D("10"))

    def test_release_frees_headroom(self, ledger, make_budget_code):
        code = make_budget_code(total="1000")
        requisition_id = uuid4()
        reservation_id = ledger.reserve(code.id, D("600"), requisition_id)

        allocation = ledger.release(reservation_id, "rejected")

        assert allocation.status == AllocationStatus.RELEASED
        assert allocation.release_reason == "rejected"
        assert ledger.get_budget_code(code.id).remaining == D("1000")
        assert ledger.active_reservation_for(requisition_id) is None

    def test_release_after_commit_refused(self, ledger, make_budget_code):
        code = make_budget_code()
        reservation_id = ledger.reserve(code.id, D("10"), uuid4())
        ledger.commit(reservation_id, D("10"))

        with pytest.raises(ReservationNotFoundError):
            ledger.release(reservation_id, "too late")

    def test_reconcile(self, ledger, make_budget_code):
        code = make_budget_code(total="1000")
        reservation_id = ledger.reserve(code.id, D("600"), uuid4())
        ledger.commit(reservation_id, D("600"))

        ledger.reconcile(reservation_id, D("640"))

        assert ledger.get_budget_code(code.id).used == D("640")

    def test_reconcile_requires_consumed(self, ledger, make_budget_code):
        code = make_budget_code()
        reservation_id = ledger.reserve(code.id, D("10"), uuid4())

        with pytest.raises(ReservationNotFoundError):
            ledger.reconcile(reservation_id, D("10"))

    def test_unknown_reservation(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            ledger.commit(uuid4(), D("1"))


class TestReleaseStale:
    def test_releases_only_old_allocations(self, ledger, session, clock, make_budget_code):
        code = make_budget_code(total="1000")
        old = ledger.reserve(code.id, D("300"), uuid4())
        clock.advance_days(20)
        fresh = ledger.reserve(code.id, D("200"), uuid4())
        session.commit()
        clock.advance_days(15)

        result = ledger.release_stale(max_age_days=30)
        session.commit()

        assert result.count == 1
        assert result.amount == D("300")
        assert result.budget_codes == (code.code,)
        assert ledger.get_allocation(old).status == AllocationStatus.RELEASED
        assert ledger.get_allocation(old).release_reason == STALE_RELEASE_REASON
        assert ledger.get_allocation(fresh).status == AllocationStatus.ALLOCATED
        assert ledger.get_budget_code(code.id).reserved == D("200")

    def test_idempotent(self, ledger, session, clock, make_budget_code):
        code = make_budget_code()
        ledger.reserve(code.id, D("300"), uuid4())
        session.commit()
        clock.advance_days(31)

        first = ledger.release_stale(30)
        second = ledger.release_stale(30)

        assert first.count == 1
        assert second.count == 0
        assert second.amount == D("0")

    def test_consumed_allocations_untouched(self, ledger, clock, make_budget_code):
        code = make_budget_code()
        reservation_id = ledger.reserve(code.id, D("300"), uuid4())
        ledger.commit(reservation_id, D("300"))
        clock.advance_days(90)

        assert ledger.release_stale(30).count == 0
        assert ledger.get_budget_code(code.id).used == D("300")

    def test_max_age_must_be_positive(self, ledger):
        with pytest.raises(ValidationError):
            ledger.release_stale(0)
