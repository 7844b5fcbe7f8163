"""
Notification outbox.

Rows are written in the same transaction as the workflow transition they
describe, so a notification exists if and only if the transition
committed.  The dispatcher delivers them later and records the outcome
here; delivery never touches requisition state.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from procure_kernel.db.base import Base, UUIDString


class OutboxEventModel(Base):
    __tablename__ = "outbox_events"

    __table_args__ = (
        Index("ix_outbox_events_undispatched", "dispatched_at", "created_at"),
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    requisition_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        state = "dispatched" if self.dispatched_at else f"attempts={self.attempts}"
        return f"<OutboxEvent {self.event_type} {state}>"
