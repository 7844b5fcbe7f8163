"""
Module: procure_kernel.domain.approval
Responsibility: Pure approval-chain construction and progression for
    purchase requisitions: who approves, in what order, and how a decision
    or a clarification round moves the chain.
Architecture position: Kernel > Domain.  Pure functions over frozen
    dataclasses.  ZERO I/O: no database, no clock, no directory lookups.
    Reporting lines and the approver roster are passed in explicitly.

Invariants enforced:
    - Levels are 1-based and contiguous.
    - At most one step is PENDING at any time.
    - At most one step is NEEDS_CLARIFICATION at any time.
    - A clarification may only target an earlier level that has signed off
      (APPROVED or CLARIFICATION_PROVIDED).
    - Steps not yet reached are WAITING, never PENDING.

Failure modes:
    - StepNotPendingError: a decision was made by a level that is not the
      current pending step.
    - ClarificationAlreadyPendingError: decision or second clarification
      while one is outstanding.
    - InvalidClarificationTargetError: target level is not earlier or has
      not signed off.
    - NoClarificationPendingError: answering a level with nothing to answer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from procure_kernel.exceptions import (
    ClarificationAlreadyPendingError,
    InvalidClarificationTargetError,
    NoClarificationPendingError,
    StepNotPendingError,
    ValidationError,
)


class ApprovalStage(str, Enum):
    """What a step is responsible for."""

    SUPERVISOR = "supervisor"
    FINANCE = "finance"
    SUPPLY_CHAIN = "supply_chain"
    HEAD = "head"


class StepStatus(str, Enum):
    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_CLARIFICATION = "needs_clarification"
    CLARIFICATION_PROVIDED = "clarification_provided"


SIGNED_OFF_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.CLARIFICATION_PROVIDED,
})


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ChainOutcome(str, Enum):
    """Result of a decision on the current step."""

    ADVANCED = "advanced"
    COMPLETE = "complete"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApproverRef:
    """An approver identity. Email is the identity key."""

    email: str
    name: str
    role: str
    department: str = "General"

    @property
    def key(self) -> str:
        return self.email.strip().lower()


@dataclass(frozen=True)
class RequesterProfile:
    """The requester and their reporting line, immediate supervisor first."""

    email: str
    name: str
    department: str
    reporting_line: tuple[ApproverRef, ...] = ()

    @property
    def key(self) -> str:
        return self.email.strip().lower()


@dataclass(frozen=True)
class ApprovalRoster:
    """The organisation-wide approvers every chain ends with."""

    finance_officer: ApproverRef
    supply_chain_coordinator: ApproverRef
    head_of_business: ApproverRef

    def members(self) -> frozenset[str]:
        return frozenset({
            self.finance_officer.key,
            self.supply_chain_coordinator.key,
            self.head_of_business.key,
        })


@dataclass(frozen=True)
class ClarificationRequest:
    requested_by_level: int
    requested_by_email: str
    requested_by_name: str
    message: str
    requested_at: datetime


@dataclass(frozen=True)
class ClarificationResponse:
    message: str
    responded_by_email: str
    responded_at: datetime


@dataclass(frozen=True)
class ApprovalStep:
    """One level of an approval chain."""

    level: int
    stage: ApprovalStage
    approver: ApproverRef
    status: StepStatus = StepStatus.WAITING
    comments: str | None = None
    decided_at: datetime | None = None
    decided_by: str | None = None
    clarification_request: ClarificationRequest | None = None
    clarification_response: ClarificationResponse | None = None

    @property
    def is_signed_off(self) -> bool:
        return self.status in SIGNED_OFF_STATUSES


@dataclass(frozen=True)
class ChainAdvance:
    """A decided chain and what the decision did to it."""

    chain: tuple[ApprovalStep, ...]
    outcome: ChainOutcome
    next_step: ApprovalStep | None = None


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_chain(
    requester: RequesterProfile,
    roster: ApprovalRoster,
) -> tuple[ApprovalStep, ...]:
    """
    Derive the ordered approval chain for a requester.

    Supervisor levels come from the requester's reporting line, walked
    upward until the head of business is reached.  The requester, repeated
    entries and roster members are never supervisor levels; roster members
    approve at their own stage.  Finance, supply chain and head follow, each
    once.  Direct reports of the head of business get no supervisor levels.
    """
    roster_keys = roster.members()
    seen: set[str] = set()
    approvers: list[tuple[ApprovalStage, ApproverRef]] = []

    for supervisor in requester.reporting_line:
        key = supervisor.key
        if key == roster.head_of_business.key:
            break
        if key in seen:
            # Reporting line loops back on itself.
            break
        seen.add(key)
        if key == requester.key or key in roster_keys:
            continue
        approvers.append((ApprovalStage.SUPERVISOR, supervisor))

    for stage, approver in (
        (ApprovalStage.FINANCE, roster.finance_officer),
        (ApprovalStage.SUPPLY_CHAIN, roster.supply_chain_coordinator),
        (ApprovalStage.HEAD, roster.head_of_business),
    ):
        if any(existing.key == approver.key for _, existing in approvers):
            continue
        approvers.append((stage, approver))

    return tuple(
        ApprovalStep(
            level=index,
            stage=stage,
            approver=approver,
            status=StepStatus.PENDING if index == 1 else StepStatus.WAITING,
        )
        for index, (stage, approver) in enumerate(approvers, start=1)
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def current_step(chain: tuple[ApprovalStep, ...]) -> ApprovalStep | None:
    """The unique PENDING step, or None when the chain is finished."""
    for step in chain:
        if step.status == StepStatus.PENDING:
            return step
    return None


def outstanding_clarification(
    chain: tuple[ApprovalStep, ...],
) -> ApprovalStep | None:
    """The step currently asked for clarification, if any."""
    for step in chain:
        if step.status == StepStatus.NEEDS_CLARIFICATION:
            return step
    return None


def step_at(chain: tuple[ApprovalStep, ...], level: int) -> ApprovalStep | None:
    for step in chain:
        if step.level == level:
            return step
    return None


def check_chain_consistency(chain: tuple[ApprovalStep, ...]) -> None:
    """Raise ValueError if the chain breaks a structural invariant."""
    levels = [step.level for step in chain]
    if levels != list(range(1, len(chain) + 1)):
        raise ValueError(f"Approval levels are not contiguous: {levels}")
    pending = [s.level for s in chain if s.status == StepStatus.PENDING]
    if len(pending) > 1:
        raise ValueError(f"More than one pending approval step: {pending}")
    asked = [s.level for s in chain if s.status == StepStatus.NEEDS_CLARIFICATION]
    if len(asked) > 1:
        raise ValueError(f"More than one clarification outstanding: {asked}")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _replace_step(
    chain: tuple[ApprovalStep, ...],
    updated: ApprovalStep,
) -> tuple[ApprovalStep, ...]:
    return tuple(updated if s.level == updated.level else s for s in chain)


def advance(
    chain: tuple[ApprovalStep, ...],
    level: int,
    decision: Decision,
    decided_by: str,
    at: datetime,
    comments: str | None = None,
) -> ChainAdvance:
    """
    Apply a decision by the current pending level.

    Approve moves the chain to the next WAITING level (or completes it);
    reject ends it.  Later levels stay WAITING after a rejection.
    """
    asked = outstanding_clarification(chain)
    if asked is not None:
        raise ClarificationAlreadyPendingError(asked.level)

    current = current_step(chain)
    if current is None or current.level != level:
        raise StepNotPendingError(level, current.level if current else None)

    if decision == Decision.REJECT:
        decided = replace(
            current,
            status=StepStatus.REJECTED,
            comments=comments,
            decided_at=at,
            decided_by=decided_by,
        )
        return ChainAdvance(_replace_step(chain, decided), ChainOutcome.REJECTED)

    decided = replace(
        current,
        status=StepStatus.APPROVED,
        comments=comments,
        decided_at=at,
        decided_by=decided_by,
    )
    updated = _replace_step(chain, decided)

    following = next(
        (s for s in updated if s.level > level and s.status == StepStatus.WAITING),
        None,
    )
    if following is None:
        return ChainAdvance(updated, ChainOutcome.COMPLETE)

    activated = replace(following, status=StepStatus.PENDING)
    return ChainAdvance(
        _replace_step(updated, activated),
        ChainOutcome.ADVANCED,
        next_step=activated,
    )


def request_clarification(
    chain: tuple[ApprovalStep, ...],
    from_level: int,
    to_level: int,
    message: str,
    requested_by_email: str,
    requested_by_name: str,
    at: datetime,
) -> tuple[ApprovalStep, ...]:
    """
    The current pending level asks an earlier, signed-off level a question.

    The asking step stays PENDING (suspended); the target becomes
    NEEDS_CLARIFICATION.
    """
    if not message or not message.strip():
        raise ValidationError("message", "clarification message is required")

    asked = outstanding_clarification(chain)
    if asked is not None:
        raise ClarificationAlreadyPendingError(asked.level)

    current = current_step(chain)
    if current is None or current.level != from_level:
        raise StepNotPendingError(from_level, current.level if current else None)

    if to_level >= from_level:
        raise InvalidClarificationTargetError(
            from_level, to_level, "target must be an earlier level"
        )

    target = step_at(chain, to_level)
    if target is None:
        raise InvalidClarificationTargetError(
            from_level, to_level, "no such level"
        )
    if not target.is_signed_off:
        raise InvalidClarificationTargetError(
            from_level, to_level, f"target level is {target.status.value}"
        )

    flagged = replace(
        target,
        status=StepStatus.NEEDS_CLARIFICATION,
        clarification_request=ClarificationRequest(
            requested_by_level=from_level,
            requested_by_email=requested_by_email,
            requested_by_name=requested_by_name,
            message=message.strip(),
            requested_at=at,
        ),
        clarification_response=None,
    )
    return _replace_step(chain, flagged)


def provide_clarification(
    chain: tuple[ApprovalStep, ...],
    level: int,
    response: str,
    responded_by_email: str,
    at: datetime,
) -> tuple[ApprovalStep, ...]:
    """The flagged level answers; it becomes CLARIFICATION_PROVIDED."""
    target = step_at(chain, level)
    if target is None or target.status != StepStatus.NEEDS_CLARIFICATION:
        raise NoClarificationPendingError(level)

    if not response or not response.strip():
        raise ValidationError("response", "clarification response is required")

    answered = replace(
        target,
        status=StepStatus.CLARIFICATION_PROVIDED,
        clarification_response=ClarificationResponse(
            message=response.strip(),
            responded_by_email=responded_by_email,
            responded_at=at,
        ),
    )
    return _replace_step(chain, answered)
