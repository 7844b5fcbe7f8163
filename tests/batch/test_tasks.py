"""
Tests for the shipped batch tasks run through BatchRunner.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from procure_batch.domain.types import BatchItemStatus, BatchRunStatus
from procure_batch.services.executor import BatchRunner
from procure_batch.tasks import DispatchOutboxTask, ReleaseStaleReservationsTask, TaskRegistry
from procure_kernel.domain.budget import AllocationStatus
from procure_kernel.domain.events import RequisitionEvent
from procure_kernel.services.notification_dispatcher import OutboxWriter

D = Decimal


class FlakyNotifier:
    def __init__(self, down=False):
        self.down = down
        self.sent = []

    def notify(self, event, snapshot):
        if self.down:
            raise ConnectionError("mail gateway unreachable")
        self.sent.append(event)


@pytest.fixture
def notifier():
    return FlakyNotifier()


@pytest.fixture
def runner(session, clock, notifier):
    registry = TaskRegistry()
    registry.register(ReleaseStaleReservationsTask())
    registry.register(DispatchOutboxTask(notifier, max_attempts=3))
    return BatchRunner(session, registry, clock)


class TestReleaseStaleReservationsTask:
    def test_one_item_per_code(self, runner, session, clock, ledger, make_budget_code):
        first = make_budget_code(total="1000")
        second = make_budget_code(total="1000")
        untouched = make_budget_code(total="1000")
        old_a = ledger.reserve(first.id, D("100"), uuid4())
        ledger.reserve(first.id, D("50"), uuid4())
        ledger.reserve(second.id, D("200"), uuid4())
        session.commit()
        clock.advance_days(31)
        fresh = ledger.reserve(untouched.id, D("300"), uuid4())
        session.commit()

        result = runner.run("budget.release_stale_reservations", {"max_age_days": 30})
        session.commit()

        assert result.status == BatchRunStatus.COMPLETED
        assert result.total_items == 2
        released = {
            r.result_data["budget_codes"][0]: D(r.result_data["released_amount"])
            for r in result.item_results
        }
        assert released == {first.code: D("150"), second.code: D("200")}
        assert ledger.get_allocation(old_a).status == AllocationStatus.RELEASED
        assert ledger.get_allocation(fresh).status == AllocationStatus.ALLOCATED
        assert ledger.get_budget_code(first.id).reserved == D("0")

    def test_nothing_stale(self, runner, ledger, session, make_budget_code):
        code = make_budget_code()
        ledger.reserve(code.id, D("10"), uuid4())
        session.commit()

        result = runner.run("budget.release_stale_reservations")

        assert result.total_items == 0
        assert result.status == BatchRunStatus.COMPLETED

    def test_default_age_from_task(self, session, clock, ledger, make_budget_code):
        code = make_budget_code()
        ledger.reserve(code.id, D("10"), uuid4())
        session.commit()
        clock.advance_days(8)
        registry = TaskRegistry()
        registry.register(ReleaseStaleReservationsTask(default_max_age_days=7))

        result = BatchRunner(session, registry, clock).run("budget.release_stale_reservations")

        assert result.succeeded == 1


class TestDispatchOutboxTask:
    @pytest.fixture
    def outbox(self, session, clock):
        writer = OutboxWriter(session, clock)
        rows = [
            writer.record(RequisitionEvent.SUBMITTED, uuid4(), {"n": 1}),
            writer.record(RequisitionEvent.APPROVED, uuid4(), {"n": 2}),
        ]
        session.commit()
        return rows

    def test_delivers_pending_rows(self, runner, session, notifier, outbox):
        result = runner.run("notifications.dispatch_outbox", {"limit": 10})
        session.commit()

        assert result.succeeded == 2
        assert all(r.result_data["delivered"] for r in result.item_results)
        assert sorted(notifier.sent) == sorted(
            [RequisitionEvent.SUBMITTED.value, RequisitionEvent.APPROVED.value]
        )
        assert all(row.dispatched_at is not None for row in outbox)

    def test_collaborator_failure_is_kept_on_the_row(self, runner, session, notifier, outbox):
        notifier.down = True

        result = runner.run("notifications.dispatch_outbox")
        session.commit()

        assert result.status == BatchRunStatus.COMPLETED
        assert {r.status for r in result.item_results} == {BatchItemStatus.SUCCEEDED}
        assert not any(r.result_data["delivered"] for r in result.item_results)
        for row in outbox:
            session.refresh(row)
            assert row.attempts == 1
            assert row.last_error == "mail gateway unreachable"
            assert row.dispatched_at is None

    def test_stops_after_max_attempts(self, runner, session, notifier, outbox):
        notifier.down = True
        for _ in range(3):
            runner.run("notifications.dispatch_outbox")
            session.commit()

        notifier.down = False
        result = runner.run("notifications.dispatch_outbox")

        assert result.total_items == 0
        assert notifier.sent == []
