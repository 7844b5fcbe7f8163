"""
Outbox writer and notification dispatcher.

Responsibility:
    ``OutboxWriter`` records a notification row inside the workflow's unit
    of work.  ``NotificationDispatcher`` later hands undelivered rows to the
    ``NotificationCollaborator``.  A failing collaborator is logged as an
    ``ExternalDependencyError``; the row keeps its attempt count and error
    and is retried on the next run until ``max_attempts``.

Architecture position:
    Kernel > Services.  Flush-only; the batch task or caller commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.collaborators import NotificationCollaborator
from procure_kernel.domain.events import RequisitionEvent, to_jsonable
from procure_kernel.logging_config import get_logger
from procure_kernel.models.outbox import OutboxEventModel
from procure_kernel.services.external import report_external_failure

logger = get_logger("services.notification_dispatcher")

DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class DispatchResult:
    delivered: int
    failed: int
    skipped: int = 0


class OutboxWriter:
    """Appends notification rows within the caller's transaction."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        event: RequisitionEvent,
        requisition_id: UUID | None,
        payload: dict[str, Any],
    ) -> OutboxEventModel:
        row = OutboxEventModel(
            event_type=event.value,
            requisition_id=requisition_id,
            payload=to_jsonable(payload),
            created_at=self._clock.now(),
            attempts=0,
        )
        self._session.add(row)
        logger.debug(
            "outbox_event_recorded",
            extra={"event_type": event.value, "requisition_id": str(requisition_id)},
        )
        return row


class NotificationDispatcher:
    """Delivers pending outbox rows to the notification collaborator."""

    def __init__(
        self,
        session: Session,
        notifier: NotificationCollaborator,
        clock: Clock | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session = session
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    def pending(self, limit: int = 100) -> list[OutboxEventModel]:
        return list(
            self._session.execute(
                select(OutboxEventModel)
                .where(
                    OutboxEventModel.dispatched_at.is_(None),
                    OutboxEventModel.attempts < self._max_attempts,
                )
                .order_by(OutboxEventModel.created_at, OutboxEventModel.id)
                .limit(limit)
            ).scalars().all()
        )

    def dispatch_one(self, row: OutboxEventModel) -> bool:
        """Deliver one row; returns True if the collaborator accepted it."""
        row.attempts += 1
        try:
            self._notifier.notify(row.event_type, dict(row.payload))
        except Exception as exc:
            row.last_error = str(exc) or type(exc).__name__
            report_external_failure(
                logger,
                "notification",
                "notify",
                exc,
                event_type=row.event_type,
                outbox_id=row.id,
                attempts=row.attempts,
            )
            return False
        row.dispatched_at = self._clock.now()
        row.last_error = None
        return True

    def dispatch_pending(self, limit: int = 100) -> DispatchResult:
        delivered = failed = 0
        for row in self.pending(limit):
            if self.dispatch_one(row):
                delivered += 1
            else:
                failed += 1
        self._session.flush()

        logger.info(
            "outbox_dispatched",
            extra={"delivered": delivered, "failed": failed},
        )
        return DispatchResult(delivered=delivered, failed=failed)
