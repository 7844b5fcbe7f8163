"""
procure_batch.domain -- Pure types and value objects for batch processing.

ZERO I/O.  All types are frozen dataclasses.
"""

from procure_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
    JobSchedule,
    ScheduleFrequency,
)

__all__ = [
    "BatchItemResult",
    "BatchItemStatus",
    "BatchRunResult",
    "BatchRunStatus",
    "JobSchedule",
    "ScheduleFrequency",
]
