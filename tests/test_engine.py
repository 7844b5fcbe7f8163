"""Tests for procure_kernel.db.engine session handling."""

from decimal import Decimal
from uuid import uuid4

import pytest

from procure_kernel.db.engine import get_session, reset_engine, session_scope
from procure_kernel.exceptions import DuplicateBudgetCodeError
from procure_kernel.services.budget_ledger import BudgetLedgerService


def _create(session, code="OPS-900"):
    return BudgetLedgerService(session).create_budget_code(
        code=code,
        name="Scope test",
        department="Operations",
        total_budget=Decimal("1000"),
        actor_id=uuid4(),
    )


class TestSessionScope:
    def test_commits_on_success(self, engine):
        with session_scope() as session:
            created = _create(session)

        with session_scope() as session:
            assert BudgetLedgerService(session).get_budget_code(created.id).code == "OPS-900"

    def test_rolls_back_and_reraises(self, engine, captured_logs):
        with session_scope() as session:
            _create(session)

        with pytest.raises(DuplicateBudgetCodeError):
            with session_scope() as session:
                _create(session, code="OPS-901")
                _create(session, code="OPS-900")

        rolled_back = [r for r in captured_logs() if r["message"] == "transaction_rolled_back"]
        assert rolled_back[0]["exc_code"] == "DUPLICATE_BUDGET_CODE"
        with session_scope() as session:
            _create(session, code="OPS-901")

    def test_rollback_discards_earlier_writes(self, engine):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                _create(session, code="OPS-902")
                raise RuntimeError("abort")

        with session_scope() as session:
            _create(session, code="OPS-902")


class TestUninitialized:
    def test_session_requires_engine(self):
        reset_engine()
        with pytest.raises(RuntimeError, match="init_engine_from_url"):
            get_session()
