"""
procure_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.

Architecture position:
    Sits above ``procure_kernel``.  The kernel MUST NEVER import from
    ``procure_config``; ``bridges`` translates settings into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the configured settings file does not exist.
    - ``KeyError`` / ``ValueError`` -- schema validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``PROCURE_CONFIG_TRACE`` log entry with the config id, version and
    checksum.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from procure_config.bridges import (
    build_job_schedules,
    build_roster,
    build_workflow_policy,
)
from procure_config.loader import load_yaml_file, parse_settings
from procure_config.schema import WorkflowSettings

_logger = logging.getLogger("procure_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "PROCURE_CONFIG_PATH"


def get_active_config(config_path: Path | None = None) -> WorkflowSettings:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``config_path``, then the
    ``PROCURE_CONFIG_PATH`` environment variable, then the bundled
    ``sets/default.yaml``.  Not cached; callers hold the returned settings.

    Raises:
        FileNotFoundError: If the settings file does not exist.
        KeyError / ValueError: If the settings fail validation.
    """
    env_path = os.environ.get(CONFIG_PATH_ENV)
    path = config_path or (Path(env_path) if env_path else _DEFAULT_CONFIG_PATH)

    settings = parse_settings(load_yaml_file(path))

    _logger.info(
        "PROCURE_CONFIG_TRACE",
        extra={
            "trace_type": "PROCURE_CONFIG_TRACE",
            "config_id": settings.config_id,
            "config_version": settings.version,
            "checksum": settings.checksum,
            "source": str(path),
            "schedule_count": len(settings.schedules),
        },
    )
    return settings


__all__ = [
    "CONFIG_PATH_ENV",
    "WorkflowSettings",
    "build_job_schedules",
    "build_roster",
    "build_workflow_policy",
    "get_active_config",
]
