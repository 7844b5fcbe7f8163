"""
WorkflowPolicy -- the configuration the kernel runs under.

The kernel never reads configuration itself.  ``procure_config`` builds a
WorkflowPolicy from YAML and the host passes it to the services.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from procure_kernel.domain.approval import ApprovalRoster


@dataclass(frozen=True)
class WorkflowPolicy:
    roster: ApprovalRoster
    currency: str = "XAF"
    requisition_prefix: str = "REQ"
    petty_cash_prefix: str = "PCF"
    min_justification_length: int = 20
    stale_reservation_days: int = 30
    warning_threshold: Decimal = Decimal("75")
    critical_threshold: Decimal = Decimal("90")

    def __post_init__(self) -> None:
        if self.stale_reservation_days < 1:
            raise ValueError("stale_reservation_days must be at least 1")
        if not Decimal("0") < self.warning_threshold < self.critical_threshold <= Decimal("100"):
            raise ValueError(
                "thresholds must satisfy 0 < warning < critical <= 100, got "
                f"{self.warning_threshold} / {self.critical_threshold}"
            )
