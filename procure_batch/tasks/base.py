"""
Batch task contract and registry.

A task splits its work into items in ``prepare_items()`` and handles one
item per ``execute_item()`` call.  The runner wraps each call in its own
SAVEPOINT, so tasks flush but never commit or roll back.  Concrete tasks
drive kernel services (the budget ledger, the notification dispatcher)
with a ``DeterministicClock`` pinned to the run's ``as_of``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.orm import Session

from procure_batch.domain.types import BatchItemStatus


@dataclass(frozen=True)
class BatchItemInput:
    """One unit of work, e.g. a budget code to sweep or an outbox row."""

    item_index: int
    item_key: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchTaskResult:
    status: BatchItemStatus
    result_data: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None


@runtime_checkable
class BatchTask(Protocol):
    @property
    def task_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]: ...

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult: ...


class TaskRegistry:
    """Tasks keyed by ``task_type``; each type may be registered once."""

    def __init__(self, tasks: tuple[BatchTask, ...] = ()) -> None:
        self._by_type: dict[str, BatchTask] = {}
        for task in tasks:
            self.register(task)

    def register(self, task: BatchTask) -> None:
        if task.task_type in self._by_type:
            raise ValueError(f"Task type '{task.task_type}' is already registered")
        self._by_type[task.task_type] = task

    def get(self, task_type: str) -> BatchTask:
        task = self._by_type.get(task_type)
        if task is None:
            known = ", ".join(self.list_tasks()) or "none"
            raise KeyError(f"No task registered for '{task_type}' (known: {known})")
        return task

    def list_tasks(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_type))

    def __len__(self) -> int:
        return len(self._by_type)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._by_type
