"""
WorkflowSettings schema.

The human-authored, reviewable configuration source.  YAML files are
parsed into these frozen types by the loader; ``bridges`` turns them into
the kernel's ``WorkflowPolicy``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

# ---------------------------------------------------------------------------
# Approvers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApproverDef:
    email: str
    name: str
    role: str
    department: str = "General"


@dataclass(frozen=True)
class RosterDef:
    """Organisation-wide approvers that close every approval chain."""

    finance_officer: ApproverDef
    supply_chain_coordinator: ApproverDef
    head_of_business: ApproverDef


# ---------------------------------------------------------------------------
# Ledger, documents, schedules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    stale_reservation_days: int = 30
    warning_threshold: Decimal = Decimal("75")
    critical_threshold: Decimal = Decimal("90")


@dataclass(frozen=True)
class DocumentSettings:
    requisition_prefix: str = "REQ"
    petty_cash_prefix: str = "PCF"
    min_justification_length: int = 20


@dataclass(frozen=True)
class ScheduleDef:
    """Cron schedule for a batch task."""

    name: str
    task_type: str
    cron: str
    parameters: tuple[tuple[str, object], ...] = ()
    enabled: bool = True


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowSettings:
    config_id: str
    version: int
    currency: str
    roster: RosterDef
    ledger: LedgerSettings
    documents: DocumentSettings
    schedules: tuple[ScheduleDef, ...] = ()
    checksum: str = ""
