"""
Tests for procure_kernel.domain.budget.

BudgetPosition arithmetic, alert levels and code/name validation.  The
property tests drive random sequences of ledger moves and check that the
position never overdraws.
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from procure_kernel.domain.budget import (
    AlertLevel,
    BudgetPeriod,
    BudgetPosition,
    UtilizationBand,
    alert_level,
    normalize_budget_code,
    period_end_date,
    utilization_band,
    validate_budget_name,
)
from procure_kernel.exceptions import InsufficientBudgetError, ValidationError

D = Decimal


class TestBudgetPosition:
    def test_remaining(self):
        position = BudgetPosition(D("1000"), used=D("200"), reserved=D("300"))
        assert position.remaining == D("500")

    def test_reserve_within_headroom(self):
        position = BudgetPosition(D("1000")).reserve(D("600"), "OPS")
        assert position.reserved == D("600")
        assert position.remaining == D("400")

    def test_reserve_exactly_remaining(self):
        position = BudgetPosition(D("1000"), reserved=D("400")).reserve(D("600"), "OPS")
        assert position.remaining == D("0")

    def test_reserve_over_headroom(self):
        position = BudgetPosition(D("1000"), reserved=D("600"))

        with pytest.raises(InsufficientBudgetError) as exc_info:
            position.reserve(D("500"), "OPS")

        assert exc_info.value.budget_code == "OPS"
        assert exc_info.value.remaining == "400"

    def test_commit_moves_reserved_to_used(self):
        position = BudgetPosition(D("1000"), reserved=D("600"))

        committed = position.commit(D("600"), D("550"), "OPS")

        assert committed.used == D("550")
        assert committed.reserved == D("0")
        assert committed.remaining == D("450")

    def test_commit_above_reservation_uses_headroom(self):
        position = BudgetPosition(D("1000"), reserved=D("600"))

        committed = position.commit(D("600"), D("900"), "OPS")

        assert committed.used == D("900")

    def test_commit_beyond_headroom(self):
        position = BudgetPosition(D("1000"), used=D("300"), reserved=D("600"))

        with pytest.raises(InsufficientBudgetError):
            position.commit(D("600"), D("800"), "OPS")

    def test_release(self):
        position = BudgetPosition(D("1000"), reserved=D("600")).release(D("600"))
        assert position.reserved == D("0")
        assert position.remaining == D("1000")

    def test_reconcile_reprices_used(self):
        position = BudgetPosition(D("1000"), used=D("550"))

        assert position.reconcile(D("550"), D("500"), "OPS").used == D("500")
        assert position.reconcile(D("550"), D("1000"), "OPS").used == D("1000")
        with pytest.raises(InsufficientBudgetError):
            position.reconcile(D("550"), D("1001"), "OPS")

    def test_total_cannot_drop_below_committed_and_reserved(self):
        position = BudgetPosition(D("1000"), used=D("300"), reserved=D("200"))

        assert position.with_total(D("500")).total == D("500")
        with pytest.raises(ValidationError):
            position.with_total(D("499.99"))

    def test_utilization_uses_committed_only(self):
        position = BudgetPosition(D("1000"), used=D("250"), reserved=D("700"))
        assert position.utilization_percentage == D("25.00")

    def test_utilization_of_zero_budget(self):
        assert BudgetPosition(D("0")).utilization_percentage == D("0")


@st.composite
def moves(draw):
    kind = draw(st.sampled_from(["reserve", "commit", "release", "reconcile"]))
    amount = draw(st.decimals(min_value=D("0.01"), max_value=D("5000"), places=2))
    return kind, amount


class TestBudgetPositionProperties:
    @given(
        total=st.decimals(min_value=D("0"), max_value=D("10000"), places=2),
        sequence=st.lists(moves(), max_size=40),
    )
    @settings(max_examples=200)
    def test_never_overdrawn(self, total, sequence):
        position = BudgetPosition(total)
        reservations: list[Decimal] = []
        commitments: list[Decimal] = []

        for kind, amount in sequence:
            try:
                if kind == "reserve":
                    position = position.reserve(amount, "PROP")
                    reservations.append(amount)
                elif kind == "commit" and reservations:
                    held = reservations.pop()
                    try:
                        position = position.commit(held, amount, "PROP")
                        commitments.append(amount)
                    except InsufficientBudgetError:
                        reservations.append(held)
                elif kind == "release" and reservations:
                    position = position.release(reservations.pop())
                elif kind == "reconcile" and commitments:
                    previous = commitments.pop()
                    try:
                        position = position.reconcile(previous, amount, "PROP")
                        commitments.append(amount)
                    except InsufficientBudgetError:
                        commitments.append(previous)
            except InsufficientBudgetError:
                pass

            assert position.used + position.reserved <= position.total
            assert position.used >= 0
            assert position.reserved >= 0
            assert position.reserved == sum(reservations, D("0"))
            assert position.used == sum(commitments, D("0"))


class TestAlertLevels:
    @pytest.mark.parametrize(
        ("utilization", "expected"),
        [
            (D("0"), AlertLevel.NONE),
            (D("74.99"), AlertLevel.NONE),
            (D("75"), AlertLevel.WARNING),
            (D("89.99"), AlertLevel.WARNING),
            (D("90"), AlertLevel.CRITICAL),
            (D("100"), AlertLevel.CRITICAL),
        ],
    )
    def test_default_thresholds(self, utilization, expected):
        assert alert_level(utilization) == expected

    def test_custom_thresholds(self):
        assert alert_level(D("60"), D("50"), D("80")) == AlertLevel.WARNING

    @pytest.mark.parametrize(
        ("utilization", "expected"),
        [
            (D("10"), UtilizationBand.LOW),
            (D("50"), UtilizationBand.MODERATE),
            (D("80"), UtilizationBand.HIGH),
            (D("95"), UtilizationBand.CRITICAL),
        ],
    )
    def test_bands(self, utilization, expected):
        assert utilization_band(utilization) == expected


class TestCodeValidation:
    def test_code_is_uppercased(self):
        assert normalize_budget_code(" ops-2024_a ") == "OPS-2024_A"

    @pytest.mark.parametrize("code", ["", "   ", "OPS 2024", "OPS/1", "ÉTÉ"])
    def test_bad_codes(self, code):
        with pytest.raises(ValidationError):
            normalize_budget_code(code)

    def test_name_length(self):
        assert validate_budget_name("  Fleet  ") == "Fleet"
        with pytest.raises(ValidationError):
            validate_budget_name("ab")
        with pytest.raises(ValidationError):
            validate_budget_name("x" * 101)

    def test_period_end_dates(self):
        start = date(2024, 2, 10)
        assert period_end_date(BudgetPeriod.MONTHLY, start) == date(2024, 2, 29)
        assert period_end_date(BudgetPeriod.QUARTERLY, start) == date(2024, 3, 31)
        assert period_end_date(BudgetPeriod.YEARLY, start) == date(2024, 12, 31)
        assert period_end_date(BudgetPeriod.PROJECT, start) is None
