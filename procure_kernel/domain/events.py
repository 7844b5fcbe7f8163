"""
Notification event types and snapshot serialization.

Events are written to the outbox in the same transaction as the state
change they describe.  The snapshot is plain JSON so the dispatcher and
any collaborator can read it without the ORM.
"""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class RequisitionEvent(str, Enum):
    SUBMITTED = "requisition.submitted"
    STEP_APPROVED = "requisition.step_approved"
    FINANCE_VERIFIED = "requisition.finance_verified"
    SUPPLY_CHAIN_ACCEPTED = "requisition.supply_chain_accepted"
    BUYER_ASSIGNED = "requisition.buyer_assigned"
    APPROVED = "requisition.approved"
    REJECTED = "requisition.rejected"
    SUPPLY_CHAIN_REJECTED = "requisition.supply_chain_rejected"
    CLARIFICATION_REQUESTED = "requisition.clarification_requested"
    CLARIFICATION_PROVIDED = "requisition.clarification_provided"
    CANCELLED = "requisition.cancelled"
    PETTY_CASH_FORM_GENERATED = "requisition.petty_cash_form_generated"
    PETTY_CASH_FORM_UPDATED = "requisition.petty_cash_form_updated"
    PROCUREMENT_STARTED = "requisition.procurement_started"
    PROCUREMENT_COMPLETED = "requisition.procurement_completed"
    DELIVERED = "requisition.delivered"
    BUDGET_THRESHOLD_REACHED = "budget.threshold_reached"


def to_jsonable(value: Any) -> Any:
    """Convert DTOs, enums, decimals and timestamps into JSON-safe values."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return str(value)
