"""
Collaborator protocols.

Everything outside the kernel that the workflow talks to: notification
delivery, the procurement (RFQ / PO) system and petty-cash document
rendering.  Implementations live with the host application.  Failures are
caught by the kernel, logged as ``ExternalDependencyError`` and never
undo a committed transition.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


@runtime_checkable
class NotificationCollaborator(Protocol):
    """Fire-and-forget delivery of workflow events (email, chat, ...)."""

    def notify(self, event: str, snapshot: dict[str, Any]) -> None: ...


@runtime_checkable
class ProcurementCollaborator(Protocol):
    """Hand-off of approved requisitions to sourcing."""

    def on_requisition_approved(
        self,
        requisition_id: UUID,
        approved_amount: Decimal,
    ) -> None: ...


@runtime_checkable
class PettyCashRenderer(Protocol):
    """Produces the printable petty-cash form document."""

    def render(self, form: dict[str, Any]) -> None: ...
