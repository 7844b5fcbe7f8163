"""
Batch tasks: outbox delivery.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from procure_batch.domain.types import BatchItemStatus
from procure_batch.tasks.base import BatchItemInput, BatchTaskResult
from procure_kernel.domain.clock import DeterministicClock
from procure_kernel.domain.collaborators import NotificationCollaborator
from procure_kernel.models.outbox import OutboxEventModel
from procure_kernel.services.notification_dispatcher import (
    DEFAULT_MAX_ATTEMPTS,
    NotificationDispatcher,
)


class DispatchOutboxTask:
    """
    Hands pending outbox rows to the notification collaborator, one row per item.

    A collaborator failure is not an item failure: the attempt and its
    error are recorded on the row (and must survive the SAVEPOINT), and
    the row is retried on the next run until ``max_attempts``.
    """

    def __init__(
        self,
        notifier: NotificationCollaborator,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._notifier = notifier
        self._max_attempts = max_attempts

    @property
    def task_type(self) -> str:
        return "notifications.dispatch_outbox"

    @property
    def description(self) -> str:
        return "Deliver pending workflow notifications"

    def _dispatcher(self, session: Session, as_of: datetime) -> NotificationDispatcher:
        return NotificationDispatcher(
            session, self._notifier, DeterministicClock(as_of), self._max_attempts,
        )

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        limit = int(parameters.get("limit", 100))
        rows = self._dispatcher(session, as_of).pending(limit)
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(row.id),
                payload={"outbox_id": str(row.id), "event_type": row.event_type},
            )
            for i, row in enumerate(rows)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        row = session.get(OutboxEventModel, UUID(item.payload["outbox_id"]))
        if row is None or row.dispatched_at is not None:
            return BatchTaskResult(status=BatchItemStatus.SKIPPED)

        delivered = self._dispatcher(session, as_of).dispatch_one(row)
        session.flush()
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={
                "event_type": row.event_type,
                "delivered": delivered,
                "attempts": row.attempts,
            },
            error_message=None if delivered else row.last_error,
        )
