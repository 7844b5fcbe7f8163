"""
Bridges from configuration to kernel inputs.

The kernel never imports ``procure_config``; these functions translate
settings into the kernel's own value objects.
"""

from __future__ import annotations

from procure_batch.domain.types import JobSchedule, ScheduleFrequency
from procure_config.schema import ApproverDef, WorkflowSettings
from procure_kernel.domain.approval import ApprovalRoster, ApproverRef
from procure_kernel.domain.policy import WorkflowPolicy


def _approver(defn: ApproverDef) -> ApproverRef:
    return ApproverRef(
        email=defn.email,
        name=defn.name,
        role=defn.role,
        department=defn.department,
    )


def build_roster(settings: WorkflowSettings) -> ApprovalRoster:
    return ApprovalRoster(
        finance_officer=_approver(settings.roster.finance_officer),
        supply_chain_coordinator=_approver(settings.roster.supply_chain_coordinator),
        head_of_business=_approver(settings.roster.head_of_business),
    )


def build_workflow_policy(settings: WorkflowSettings) -> WorkflowPolicy:
    return WorkflowPolicy(
        roster=build_roster(settings),
        currency=settings.currency,
        requisition_prefix=settings.documents.requisition_prefix,
        petty_cash_prefix=settings.documents.petty_cash_prefix,
        min_justification_length=settings.documents.min_justification_length,
        stale_reservation_days=settings.ledger.stale_reservation_days,
        warning_threshold=settings.ledger.warning_threshold,
        critical_threshold=settings.ledger.critical_threshold,
    )


def build_job_schedules(settings: WorkflowSettings) -> tuple[JobSchedule, ...]:
    """Cron schedules for the batch runner; disabled entries are inactive."""
    return tuple(
        JobSchedule(
            job_name=s.name,
            task_type=s.task_type,
            frequency=ScheduleFrequency.CRON,
            parameters=dict(s.parameters),
            cron_expression=s.cron,
            is_active=s.enabled,
        )
        for s in settings.schedules
    )
