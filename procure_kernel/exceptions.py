"""
Typed Exception Hierarchy for the Procure Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the requisition workflow and the budget ledger must react to
failures precisely: an API layer maps them to responses, the batch runner
records them per item, and the outbox dispatcher logs them. Parsing
messages is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        ledger.reserve(code_id, Decimal("500000"), requisition_id)
    except InsufficientBudgetError as e:
        api_response(code=e.code, remaining=e.remaining)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ProcureKernelError:

    ProcureKernelError (base)
    |
    +-- ValidationError
    |
    +-- WorkflowError
    |   +-- InvalidTransitionError
    |   +-- UnauthorizedActionError
    |   +-- RequisitionNotFoundError
    |   +-- PettyCashFormNotApplicableError
    |
    +-- ApprovalChainError
    |   +-- StepNotPendingError
    |   +-- InvalidClarificationTargetError
    |   +-- ClarificationAlreadyPendingError
    |   +-- NoClarificationPendingError
    |
    +-- LedgerError
    |   +-- InsufficientBudgetError
    |   +-- ReservationNotFoundError
    |   +-- DuplicateReservationError
    |   +-- BudgetCodeNotFoundError
    |   +-- BudgetCodeInactiveError
    |   +-- DuplicateBudgetCodeError
    |
    +-- ConcurrencyError
    |   +-- StaleStateError
    |
    +-- ExternalDependencyError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Workflow and ledger errors are raised after the unit of work has been
   rolled back. State is exactly as it was before the call.

2. StaleStateError means "re-fetch and retry": another writer won the race
   for the same aggregate.

3. ExternalDependencyError is never propagated out of a workflow operation.
   Collaborator failures (notification, procurement hand-off, petty-cash
   rendering) are logged with this type and the transition stands.

===============================================================================
"""


class ProcureKernelError(Exception):
    """
    Base exception for all procure kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PROCURE_KERNEL_ERROR"


class ValidationError(ProcureKernelError):
    """Input failed validation before any mutation took place."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Workflow-related exceptions


class WorkflowError(ProcureKernelError):
    """Base exception for requisition workflow errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    """Action is not legal from the requisition's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, requisition_id: str, current_status: str, action: str):
        self.requisition_id = requisition_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} requisition {requisition_id} "
            f"in status '{current_status}'"
        )


class UnauthorizedActionError(WorkflowError):
    """Principal is not allowed to perform the action at this step."""

    code: str = "UNAUTHORIZED_ACTION"

    def __init__(self, actor: str, action: str, reason: str):
        self.actor = actor
        self.action = action
        self.reason = reason
        super().__init__(f"{actor} may not {action}: {reason}")


class RequisitionNotFoundError(WorkflowError):
    """Requisition with given ID was not found."""

    code: str = "REQUISITION_NOT_FOUND"

    def __init__(self, requisition_id: str):
        self.requisition_id = requisition_id
        super().__init__(f"Requisition not found: {requisition_id}")


class PettyCashFormNotApplicableError(WorkflowError):
    """Petty-cash forms only exist for approved cash requisitions."""

    code: str = "PETTY_CASH_NOT_APPLICABLE"

    def __init__(self, requisition_id: str, reason: str):
        self.requisition_id = requisition_id
        self.reason = reason
        super().__init__(
            f"No petty-cash form for requisition {requisition_id}: {reason}"
        )


# Approval chain exceptions


class ApprovalChainError(ProcureKernelError):
    """Base exception for approval chain errors."""

    code: str = "APPROVAL_CHAIN_ERROR"


class StepNotPendingError(ApprovalChainError):
    """The deciding level is not the chain's current pending step."""

    code: str = "STEP_NOT_PENDING"

    def __init__(self, level: int, current_level: int | None):
        self.level = level
        self.current_level = current_level
        super().__init__(
            f"Approval level {level} is not pending "
            f"(current pending level: {current_level})"
        )


class InvalidClarificationTargetError(ApprovalChainError):
    """Clarification may only target an earlier, already-approved level."""

    code: str = "INVALID_CLARIFICATION_TARGET"

    def __init__(self, from_level: int, to_level: int, reason: str):
        self.from_level = from_level
        self.to_level = to_level
        self.reason = reason
        super().__init__(
            f"Level {from_level} cannot ask level {to_level} "
            f"for clarification: {reason}"
        )


class ClarificationAlreadyPendingError(ApprovalChainError):
    """Only one clarification may be outstanding per requisition."""

    code: str = "CLARIFICATION_ALREADY_PENDING"

    def __init__(self, target_level: int):
        self.target_level = target_level
        super().__init__(
            f"A clarification is already outstanding at level {target_level}"
        )


class NoClarificationPendingError(ApprovalChainError):
    """There is no outstanding clarification to answer."""

    code: str = "NO_CLARIFICATION_PENDING"

    def __init__(self, level: int | None = None):
        self.level = level
        if level is None:
            super().__init__("No clarification is outstanding")
        else:
            super().__init__(f"Level {level} has no outstanding clarification")


# Budget ledger exceptions


class LedgerError(ProcureKernelError):
    """Base exception for budget ledger errors."""

    code: str = "LEDGER_ERROR"


class InsufficientBudgetError(LedgerError):
    """Reservation or commitment would exceed the budget code's headroom."""

    code: str = "INSUFFICIENT_BUDGET"

    def __init__(self, budget_code: str, requested: str, remaining: str):
        self.budget_code = budget_code
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Insufficient budget on {budget_code}: "
            f"requested {requested}, remaining {remaining}"
        )


class ReservationNotFoundError(LedgerError):
    """Reservation is unknown or no longer in the allocated state."""

    code: str = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: str, reason: str = "not found"):
        self.reservation_id = reservation_id
        self.reason = reason
        super().__init__(f"Reservation {reservation_id}: {reason}")


class DuplicateReservationError(LedgerError):
    """The requisition already holds an active reservation."""

    code: str = "DUPLICATE_RESERVATION"

    def __init__(self, requisition_id: str, reservation_id: str):
        self.requisition_id = requisition_id
        self.reservation_id = reservation_id
        super().__init__(
            f"Requisition {requisition_id} already holds "
            f"active reservation {reservation_id}"
        )


class BudgetCodeNotFoundError(LedgerError):
    """Budget code with given ID or code was not found."""

    code: str = "BUDGET_CODE_NOT_FOUND"

    def __init__(self, budget_code: str):
        self.budget_code = budget_code
        super().__init__(f"Budget code not found: {budget_code}")


class BudgetCodeInactiveError(LedgerError):
    """Budget code has been deactivated."""

    code: str = "BUDGET_CODE_INACTIVE"

    def __init__(self, budget_code: str):
        self.budget_code = budget_code
        super().__init__(f"Budget code is inactive: {budget_code}")


class DuplicateBudgetCodeError(LedgerError):
    """A budget code with the same code already exists."""

    code: str = "DUPLICATE_BUDGET_CODE"

    def __init__(self, budget_code: str):
        self.budget_code = budget_code
        super().__init__(f"Budget code already exists: {budget_code}")


# Concurrency-related exceptions


class ConcurrencyError(ProcureKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class StaleStateError(ConcurrencyError):
    """The aggregate was modified by another writer; re-fetch and retry."""

    code: str = "STALE_STATE"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if expected_version is not None:
            detail = f"expected version {expected_version}, found {actual_version}"
        else:
            detail = "entity was modified by another transaction"
        super().__init__(f"Stale {entity_type} {entity_id}: {detail}")


# Collaborator failures


class ExternalDependencyError(ProcureKernelError):
    """A collaborator (notification, procurement, renderer) failed."""

    code: str = "EXTERNAL_DEPENDENCY_FAILED"

    def __init__(self, collaborator: str, operation: str, reason: str):
        self.collaborator = collaborator
        self.operation = operation
        self.reason = reason
        super().__init__(f"{collaborator}.{operation} failed: {reason}")


# Immutability-related exceptions


class ImmutabilityError(ProcureKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Clarification records, rejection records and budget history are
    append-only; budget codes are archived, never deleted.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
