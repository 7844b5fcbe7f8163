"""
Requisition workflow types (``procure_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the requisition state machine (Guard, Transition,
Workflow) and the canonical ``REQUISITION_WORKFLOW`` table.  The workflow
service consults the table before every status change; a pair that is not
listed is an ``InvalidTransitionError``.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from procure_kernel.domain.requisition import (
    AWAITING_DECISION_STATUSES,
    TERMINAL_STATUSES,
    RequisitionStatus,
)
from procure_kernel.logging_config import get_logger

logger = get_logger("domain.workflow")


class BudgetEffect(str, Enum):
    """Ledger operation a transition performs atomically with it."""

    RESERVE = "reserve"
    COMMIT = "commit"
    RELEASE = "release"


class Action(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    VERIFY_BUDGET = "verify_budget"
    ACCEPT_REVIEW = "accept_review"
    ASSIGN_BUYER = "assign_buyer"
    REQUEST_CLARIFICATION = "request_clarification"
    PROVIDE_CLARIFICATION = "provide_clarification"
    CANCEL = "cancel"
    START_PROCUREMENT = "start_procurement"
    COMPLETE_PROCUREMENT = "complete_procurement"
    CONFIRM_DELIVERY = "confirm_delivery"


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Descriptive only; the workflow service evaluates it.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    budget_effect: BudgetEffect | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"Initial state {self.initial_state!r} is not a workflow state")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(f"Transition {t} references an unknown state")
            if t.from_state in self.terminal_states:
                raise ValueError(f"Terminal state {t.from_state!r} has an outgoing transition")

    def find(self, from_state: str, action: str, to_state: str | None = None) -> Transition | None:
        """The matching transition, or None if the move is illegal."""
        for t in self.transitions:
            if t.from_state != from_state or t.action != action:
                continue
            if to_state is None or t.to_state == to_state:
                return t
        return None

    def allowed_actions(self, from_state: str) -> frozenset[str]:
        return frozenset(t.action for t in self.transitions if t.from_state == from_state)


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

BUDGET_AVAILABLE = Guard(
    name="budget_available",
    description="Budget code has headroom for the verified amount",
)

APPROVAL_COMPLETE = Guard(
    name="approval_complete",
    description="Every level of the approval chain has signed off",
)

CURRENT_APPROVER = Guard(
    name="current_approver",
    description="Actor owns the current pending approval step",
)

EARLIER_LEVEL_SIGNED_OFF = Guard(
    name="earlier_level_signed_off",
    description="Clarification target is an earlier level that has signed off",
)


# -----------------------------------------------------------------------------
# Requisition Workflow
# -----------------------------------------------------------------------------

S = RequisitionStatus


def _build_transitions() -> tuple[Transition, ...]:
    a = Action
    transitions = [
        Transition(S.DRAFT, S.PENDING_SUPERVISOR, a.SUBMIT),
        Transition(S.DRAFT, S.PENDING_FINANCE_VERIFICATION, a.SUBMIT),

        Transition(S.PENDING_SUPERVISOR, S.PENDING_SUPERVISOR, a.APPROVE, CURRENT_APPROVER),
        Transition(S.PENDING_SUPERVISOR, S.PENDING_FINANCE_VERIFICATION, a.APPROVE, CURRENT_APPROVER),
        Transition(S.PENDING_SUPERVISOR, S.REJECTED, a.REJECT, CURRENT_APPROVER),

        Transition(
            S.PENDING_FINANCE_VERIFICATION, S.PENDING_SUPPLY_CHAIN_REVIEW, a.VERIFY_BUDGET,
            BUDGET_AVAILABLE, budget_effect=BudgetEffect.RESERVE,
        ),
        Transition(S.PENDING_FINANCE_VERIFICATION, S.REJECTED, a.REJECT, CURRENT_APPROVER),

        Transition(S.PENDING_SUPPLY_CHAIN_REVIEW, S.PENDING_BUYER_ASSIGNMENT, a.ACCEPT_REVIEW, CURRENT_APPROVER),
        Transition(
            S.PENDING_SUPPLY_CHAIN_REVIEW, S.SUPPLY_CHAIN_REJECTED, a.REJECT,
            CURRENT_APPROVER, budget_effect=BudgetEffect.RELEASE,
        ),
        Transition(S.PENDING_BUYER_ASSIGNMENT, S.PENDING_HEAD_APPROVAL, a.ASSIGN_BUYER, CURRENT_APPROVER),
        Transition(
            S.PENDING_BUYER_ASSIGNMENT, S.SUPPLY_CHAIN_REJECTED, a.REJECT,
            CURRENT_APPROVER, budget_effect=BudgetEffect.RELEASE,
        ),

        Transition(S.PENDING_HEAD_APPROVAL, S.APPROVED, a.APPROVE, APPROVAL_COMPLETE),
        Transition(
            S.PENDING_HEAD_APPROVAL, S.REJECTED, a.REJECT,
            CURRENT_APPROVER, budget_effect=BudgetEffect.RELEASE,
        ),

        Transition(S.APPROVED, S.IN_PROCUREMENT, a.START_PROCUREMENT),
        Transition(
            S.APPROVED, S.PROCUREMENT_COMPLETE, a.COMPLETE_PROCUREMENT,
            budget_effect=BudgetEffect.COMMIT,
        ),
        Transition(
            S.IN_PROCUREMENT, S.PROCUREMENT_COMPLETE, a.COMPLETE_PROCUREMENT,
            budget_effect=BudgetEffect.COMMIT,
        ),
        Transition(S.PROCUREMENT_COMPLETE, S.DELIVERED, a.CONFIRM_DELIVERY),
    ]

    for status in sorted(AWAITING_DECISION_STATUSES):
        transitions.append(
            Transition(status, S.PENDING_CLARIFICATION, a.REQUEST_CLARIFICATION, EARLIER_LEVEL_SIGNED_OFF)
        )
        transitions.append(
            Transition(S.PENDING_CLARIFICATION, status, a.PROVIDE_CLARIFICATION)
        )

    for status in (S.DRAFT, *sorted(AWAITING_DECISION_STATUSES), S.PENDING_CLARIFICATION):
        transitions.append(
            Transition(status, S.CANCELLED, a.CANCEL, budget_effect=BudgetEffect.RELEASE)
        )

    return tuple(
        Transition(
            RequisitionStatus(t.from_state).value,
            RequisitionStatus(t.to_state).value,
            Action(t.action).value,
            t.guard,
            t.budget_effect,
        )
        for t in transitions
    )


REQUISITION_WORKFLOW = Workflow(
    name="requisition",
    description="Purchase requisition approval and budget lifecycle",
    initial_state=S.DRAFT.value,
    states=tuple(s.value for s in RequisitionStatus),
    transitions=_build_transitions(),
    terminal_states=tuple(s.value for s in sorted(TERMINAL_STATUSES)),
)

logger.debug(
    "requisition_workflow_registered",
    extra={
        "workflow_name": REQUISITION_WORKFLOW.name,
        "state_count": len(REQUISITION_WORKFLOW.states),
        "transition_count": len(REQUISITION_WORKFLOW.transitions),
        "initial_state": REQUISITION_WORKFLOW.initial_state,
    },
)
