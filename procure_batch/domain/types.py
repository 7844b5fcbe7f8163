"""
procure_batch.domain.types -- Pure frozen dataclasses for the batch system.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class BatchRunStatus(str, Enum):
    """Outcome of a whole run."""

    COMPLETED = "completed"  # All items processed successfully
    FAILED = "failed"  # No item succeeded
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed or were skipped


class BatchItemStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Nothing to do for this item


class ScheduleFrequency(str, Enum):
    """Recurrence frequency for scheduled jobs."""

    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    CRON = "cron"  # Timing comes from cron_expression alone
    ON_DEMAND = "on_demand"  # Manual trigger only


@dataclass(frozen=True)
class BatchItemResult:
    """Result of processing a single item.

    Each item runs in its own SAVEPOINT; failure of one item does not abort
    the run.
    """

    item_index: int
    item_key: str  # Business identifier (budget code id, outbox batch, ...)
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchRunResult:
    """Returned by ``BatchRunner.run()``."""

    run_id: UUID
    job_name: str
    task_type: str
    status: BatchRunStatus
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[BatchItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error_summary: str | None = None


@dataclass(frozen=True)
class JobSchedule:
    """A recurring job and where it stands.

    ``should_fire`` reads ``next_run_at`` and the caller's clock, with no
    side effects.
    """

    job_name: str
    task_type: str
    frequency: ScheduleFrequency
    parameters: dict[str, Any] = field(default_factory=dict)
    cron_expression: str | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_run_status: BatchRunStatus | None = None
    is_active: bool = True
