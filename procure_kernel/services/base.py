"""
BaseService -- abstract base for kernel services that write.

Responsibility:
    Common constructor and the flush contract.  Services persist with
    ``session.flush()`` and never commit; the caller (the workflow service,
    the batch runner or a test) owns the transaction.  A flush that loses
    an optimistic version race surfaces as ``StaleStateError``.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from procure_kernel.db.base import Base
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.exceptions import StaleStateError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
        - ``StaleDataError`` from a versioned flush is re-raised as
          ``StaleStateError``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def flush(self, entity_type: str, entity_id: object) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise StaleStateError(entity_type, str(entity_id)) from exc
