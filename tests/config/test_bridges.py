"""
Tests for procure_config.bridges: settings into kernel and batch inputs.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from procure_batch.domain.schedule import should_fire
from procure_batch.domain.types import ScheduleFrequency
from procure_config import build_job_schedules, build_roster, build_workflow_policy, get_active_config


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.delenv("PROCURE_CONFIG_PATH", raising=False)
    return get_active_config()


class TestPolicyBridge:
    def test_policy_from_defaults(self, settings):
        policy = build_workflow_policy(settings)

        assert policy.currency == "XAF"
        assert policy.stale_reservation_days == 30
        assert policy.warning_threshold == Decimal("75")
        assert policy.roster.head_of_business.email == "head.of.business@example.com"

    def test_roster_members(self, settings):
        roster = build_roster(settings)

        assert roster.members == frozenset({
            "finance.officer@example.com",
            "supply.chain@example.com",
            "head.of.business@example.com",
        })

    def test_bad_thresholds_rejected(self, settings):
        inverted = replace(
            settings,
            ledger=replace(
                settings.ledger,
                warning_threshold=Decimal("95"),
                critical_threshold=Decimal("90"),
            ),
        )
        with pytest.raises(ValueError):
            build_workflow_policy(inverted)

    def test_stale_days_must_be_positive(self, settings):
        zero = replace(settings, ledger=replace(settings.ledger, stale_reservation_days=0))
        with pytest.raises(ValueError):
            build_workflow_policy(zero)


class TestScheduleBridge:
    def test_cron_schedules(self, settings):
        schedules = build_job_schedules(settings)

        assert [s.task_type for s in schedules] == [
            "budget.release_stale_reservations",
            "notifications.dispatch_outbox",
        ]
        assert all(s.frequency == ScheduleFrequency.CRON for s in schedules)
        assert schedules[0].parameters == {"max_age_days": 30}
        assert schedules[1].parameters == {"limit": 100}

    def test_nightly_sweep_fires_at_two(self, settings):
        sweep, _ = build_job_schedules(settings)

        assert should_fire(sweep, datetime(2024, 3, 4, 2, 0, tzinfo=timezone.utc))
        assert not should_fire(sweep, datetime(2024, 3, 4, 3, 0, tzinfo=timezone.utc))

    def test_disabled_schedule_is_inactive(self, settings):
        disabled = replace(
            settings,
            schedules=(replace(settings.schedules[0], enabled=False),),
        )

        (schedule,) = build_job_schedules(disabled)

        assert not schedule.is_active
