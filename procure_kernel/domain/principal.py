"""
Principal -- the verified identity performing an action.

Authentication happens outside the kernel.  Callers hand over a Principal
built from trusted claims; the kernel only decides whether that principal
may act on a given approval step.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class Role(str, Enum):
    """Role claims recognised by the workflow."""

    EMPLOYEE = "employee"
    SUPERVISOR = "supervisor"
    FINANCE = "finance"
    SUPPLY_CHAIN = "supply_chain"
    BUYER = "buyer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Trusted identity input: ``{user_id, role, department, email, full_name}``."""

    user_id: UUID
    email: str
    full_name: str
    role: Role
    department: str = "General"

    def __post_init__(self) -> None:
        if not self.email or "@" not in self.email:
            raise ValueError(f"Principal email is invalid: {self.email!r}")
        # Accept plain strings from callers.
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @property
    def normalized_email(self) -> str:
        return self.email.strip().lower()

    def is_email(self, email: str | None) -> bool:
        return email is not None and email.strip().lower() == self.normalized_email
