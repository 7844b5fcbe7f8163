"""
SequenceService -- document numbers via locked counter rows.

Responsibility:
    Allocates requisition numbers (``REQ-YYYYMM-NNNN``) and petty-cash form
    numbers (``PCF-YYYYMM-NNNN``).  Each prefix and month has its own
    counter row, locked with ``SELECT ... FOR UPDATE`` so concurrent
    allocations never collide.  Counting existing rows and adding one is
    never used.

Architecture position:
    Kernel > Services.  Called by RequisitionWorkflowService and
    PettyCashService inside their unit of work; the increment commits or
    rolls back with the caller's transaction.

Failure modes:
    - IntegrityError: concurrent creation of a new month's counter
      (handled with a savepoint rollback and re-read).
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procure_kernel.logging_config import get_logger
from procure_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


def format_document_number(prefix: str, at: datetime, value: int) -> str:
    return f"{prefix}-{at.year:04d}{at.month:02d}-{value:04d}"


class SequenceService:
    """
    Transactional sequence allocation.

    Does NOT call ``session.commit()``; the caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """Lock (or create) the named counter, increment it and return the value."""
        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_document_number(self, prefix: str, at: datetime) -> str:
        """Allocate the next ``PREFIX-YYYYMM-NNNN`` number for ``at``'s month."""
        sequence_name = f"{prefix}-{at.year:04d}{at.month:02d}"
        return format_document_number(prefix, at, self.next_value(sequence_name))

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
