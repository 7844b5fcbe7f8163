"""
BatchRunner -- SAVEPOINT-per-item batch execution.

Contract:
    ``run()`` prepares the items of a registered task and executes each in
    its own SAVEPOINT.  ``run_due()`` runs every schedule that should fire
    and returns the schedules advanced to their next run.

Architecture: procure_batch/services.  Imports from procure_batch.domain,
    procure_batch.tasks and the kernel clock and logging.

Invariants enforced:
    - SAVEPOINT isolation per item: one failure doesn't abort the run.
    - All timestamps come from the injected Clock.
    - Does NOT call ``session.commit()``; the caller controls boundaries.
"""

from __future__ import annotations

import time
from collections import Counter
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from procure_batch.domain.schedule import record_run, should_fire
from procure_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
    JobSchedule,
)
from procure_batch.tasks.base import BatchItemInput, BatchTask, TaskRegistry
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")


def run_status(succeeded: int, failed: int, skipped: int) -> BatchRunStatus:
    if not failed and not skipped:
        return BatchRunStatus.COMPLETED
    if not succeeded and not skipped:
        return BatchRunStatus.FAILED
    return BatchRunStatus.PARTIALLY_COMPLETED


class BatchRunner:
    """Runs registered batch tasks with SAVEPOINT-per-item isolation."""

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
    ):
        self._session = session
        self._task_registry = task_registry
        self._clock = clock or SystemClock()

    def run(
        self,
        task_type: str,
        parameters: dict[str, Any] | None = None,
        job_name: str | None = None,
    ) -> BatchRunResult:
        """Execute one run of ``task_type``.

        Raises:
            KeyError: If task_type is not registered.
        """
        task = self._task_registry.get(task_type)
        parameters = parameters or {}
        job_name = job_name or task_type
        run_id = uuid4()
        start_time = time.monotonic()
        as_of = self._clock.now()

        with LogContext.bind(correlation_id=run_id):
            logger.info(
                "batch_run_started",
                extra={"job_name": job_name, "task_type": task_type},
            )
            try:
                items = task.prepare_items(
                    parameters=parameters, session=self._session, as_of=as_of,
                )
            except Exception as exc:
                logger.error(
                    "batch_run_failed",
                    extra={"job_name": job_name, "task_type": task_type},
                    exc_info=True,
                )
                return BatchRunResult(
                    run_id=run_id,
                    job_name=job_name,
                    task_type=task_type,
                    status=BatchRunStatus.FAILED,
                    total_items=0,
                    succeeded=0,
                    failed=0,
                    skipped=0,
                    started_at=as_of,
                    completed_at=self._clock.now(),
                    duration_ms=int((time.monotonic() - start_time) * 1000),
                    error_summary=f"prepare_items failed: {exc}",
                )

            item_results = [
                self._execute_item(task, item, parameters, as_of) for item in items
            ]

        tally = Counter(r.status for r in item_results)
        succeeded = tally[BatchItemStatus.SUCCEEDED]
        failed = tally[BatchItemStatus.FAILED]
        skipped = tally[BatchItemStatus.SKIPPED]
        status = run_status(succeeded, failed, skipped)

        self._session.flush()
        duration = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "batch_run_completed",
            extra={
                "run_id": str(run_id),
                "job_name": job_name,
                "task_type": task_type,
                "status": status.value,
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
                "duration_ms": duration,
            },
        )
        return BatchRunResult(
            run_id=run_id,
            job_name=job_name,
            task_type=task_type,
            status=status,
            total_items=len(items),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(item_results),
            started_at=as_of,
            completed_at=self._clock.now(),
            duration_ms=duration,
            error_summary=f"{failed} item(s) failed" if failed else None,
        )

    def _execute_item(
        self,
        task: BatchTask,
        item: BatchItemInput,
        parameters: dict[str, Any],
        as_of: datetime,
    ) -> BatchItemResult:
        item_start = time.monotonic()
        started_at = self._clock.now()

        savepoint = self._session.begin_nested()
        try:
            result = task.execute_item(
                item=item, parameters=parameters, session=self._session, as_of=as_of,
            )
        except Exception as exc:
            savepoint.rollback()
            logger.warning(
                "batch_item_failed",
                extra={"item_key": item.item_key, "error_code": "UNHANDLED_EXCEPTION"},
                exc_info=True,
            )
            return BatchItemResult(
                item_index=item.item_index,
                item_key=item.item_key,
                status=BatchItemStatus.FAILED,
                error_code="UNHANDLED_EXCEPTION",
                error_message=str(exc),
                duration_ms=int((time.monotonic() - item_start) * 1000),
                started_at=started_at,
                completed_at=self._clock.now(),
            )

        if result.status == BatchItemStatus.SUCCEEDED:
            savepoint.commit()
        else:
            savepoint.rollback()
            if result.status == BatchItemStatus.FAILED:
                logger.warning(
                    "batch_item_failed",
                    extra={
                        "item_key": item.item_key,
                        "error_code": result.error_code or "UNKNOWN",
                        "error_message": result.error_message or "",
                    },
                )

        return BatchItemResult(
            item_index=item.item_index,
            item_key=item.item_key,
            status=result.status,
            error_code=result.error_code,
            error_message=result.error_message,
            result_data=result.result_data,
            duration_ms=int((time.monotonic() - item_start) * 1000),
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def run_due(
        self,
        schedules: tuple[JobSchedule, ...],
    ) -> tuple[tuple[JobSchedule, ...], tuple[BatchRunResult, ...]]:
        """Run every schedule that should fire now.

        Returns the schedules (advanced where they ran) and the run results.
        """
        as_of = self._clock.now()
        updated: list[JobSchedule] = []
        results: list[BatchRunResult] = []
        for schedule in schedules:
            if not should_fire(schedule, as_of):
                updated.append(schedule)
                continue
            result = self.run(schedule.task_type, schedule.parameters, schedule.job_name)
            results.append(result)
            updated.append(record_run(schedule, as_of, result.status))
        return tuple(updated), tuple(results)
