"""
procure_batch.tasks -- Task protocol, registry, and task implementations.
"""

from procure_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)
from procure_batch.tasks.budget_tasks import ReleaseStaleReservationsTask
from procure_batch.tasks.notification_tasks import DispatchOutboxTask

__all__ = [
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "DispatchOutboxTask",
    "ReleaseStaleReservationsTask",
    "TaskRegistry",
]
