"""
Tests for procure_batch.tasks.base.

BatchTask protocol conformance of the shipped tasks and TaskRegistry
registration and lookup.
"""

from dataclasses import FrozenInstanceError

import pytest

from procure_batch.domain.types import BatchItemStatus
from procure_batch.tasks import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    DispatchOutboxTask,
    ReleaseStaleReservationsTask,
    TaskRegistry,
)


class SilentNotifier:
    def notify(self, event, snapshot):
        pass


class TestDtos:
    def test_item_input_is_frozen(self):
        item = BatchItemInput(item_index=0, item_key="OPS-001")
        assert item.payload == {}
        with pytest.raises(FrozenInstanceError):
            item.item_key = "OPS-002"  # type: ignore[misc]

    def test_task_result_defaults(self):
        result = BatchTaskResult(status=BatchItemStatus.SKIPPED)
        assert result.result_data is None
        assert result.error_code is None


class TestProtocol:
    @pytest.mark.parametrize(
        "task",
        [ReleaseStaleReservationsTask(), DispatchOutboxTask(SilentNotifier())],
    )
    def test_shipped_tasks_conform(self, task):
        assert isinstance(task, BatchTask)
        assert task.description


class TestTaskRegistry:
    def test_register_and_get(self):
        registry = TaskRegistry()
        task = ReleaseStaleReservationsTask()

        registry.register(task)

        assert registry.get("budget.release_stale_reservations") is task
        assert "budget.release_stale_reservations" in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self):
        registry = TaskRegistry()
        registry.register(ReleaseStaleReservationsTask())

        with pytest.raises(ValueError, match="already registered"):
            registry.register(ReleaseStaleReservationsTask(default_max_age_days=7))

    def test_unknown_type_lists_available(self):
        registry = TaskRegistry()
        registry.register(DispatchOutboxTask(SilentNotifier()))

        with pytest.raises(KeyError, match="notifications.dispatch_outbox"):
            registry.get("budget.unknown")

    def test_list_tasks_sorted(self):
        registry = TaskRegistry()
        registry.register(ReleaseStaleReservationsTask())
        registry.register(DispatchOutboxTask(SilentNotifier()))

        assert registry.list_tasks() == (
            "budget.release_stale_reservations",
            "notifications.dispatch_outbox",
        )
