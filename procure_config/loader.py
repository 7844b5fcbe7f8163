"""
Configuration Loader (``procure_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into typed
``procure_config.schema`` dataclass instances.  The single public entry
point for runtime config is ``procure_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Approver emails in the roster are distinct.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from procure_config.schema import (
    ApproverDef,
    DocumentSettings,
    LedgerSettings,
    RosterDef,
    ScheduleDef,
    WorkflowSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_approver(data: dict[str, Any]) -> ApproverDef:
    email = str(data["email"]).strip()
    if "@" not in email:
        raise ValueError(f"Approver email is invalid: {email!r}")
    return ApproverDef(
        email=email,
        name=data["name"],
        role=data["role"],
        department=data.get("department", "General"),
    )


def parse_roster(data: dict[str, Any]) -> RosterDef:
    roster = RosterDef(
        finance_officer=parse_approver(data["finance_officer"]),
        supply_chain_coordinator=parse_approver(data["supply_chain_coordinator"]),
        head_of_business=parse_approver(data["head_of_business"]),
    )
    emails = [
        roster.finance_officer.email.lower(),
        roster.supply_chain_coordinator.email.lower(),
        roster.head_of_business.email.lower(),
    ]
    if len(set(emails)) != len(emails):
        raise ValueError(f"Roster approvers must be distinct people: {emails}")
    return roster


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    return LedgerSettings(
        stale_reservation_days=int(data.get("stale_reservation_days", 30)),
        warning_threshold=Decimal(str(data.get("warning_threshold", "75"))),
        critical_threshold=Decimal(str(data.get("critical_threshold", "90"))),
    )


def parse_documents(data: dict[str, Any]) -> DocumentSettings:
    return DocumentSettings(
        requisition_prefix=data.get("requisition_prefix", "REQ"),
        petty_cash_prefix=data.get("petty_cash_prefix", "PCF"),
        min_justification_length=int(data.get("min_justification_length", 20)),
    )


def parse_schedule(data: dict[str, Any]) -> ScheduleDef:
    parameters = data.get("parameters") or {}
    cron = str(data["cron"])
    if len(cron.split()) != 5:
        raise ValueError(f"Schedule {data['name']!r} cron must have 5 fields: {cron!r}")
    return ScheduleDef(
        name=data["name"],
        task_type=data["task_type"],
        cron=cron,
        parameters=tuple(sorted(parameters.items())),
        enabled=bool(data.get("enabled", True)),
    )


def parse_settings(data: dict[str, Any]) -> WorkflowSettings:
    """Parse a full settings document."""
    return WorkflowSettings(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        currency=data.get("currency", "XAF"),
        roster=parse_roster(data["roster"]),
        ledger=parse_ledger(data.get("ledger") or {}),
        documents=parse_documents(data.get("documents") or {}),
        schedules=tuple(parse_schedule(s) for s in data.get("schedules") or ()),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 checksum of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
