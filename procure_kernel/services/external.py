"""Uniform logging of collaborator failures."""

from __future__ import annotations

import logging

from procure_kernel.exceptions import ExternalDependencyError


def report_external_failure(
    logger: logging.Logger,
    collaborator: str,
    operation: str,
    exc: Exception,
    **context: object,
) -> ExternalDependencyError:
    """
    Log a collaborator failure as ``ExternalDependencyError`` and return it.

    The caller decides what to do next; workflow state is never rolled
    back because of a collaborator.
    """
    error = ExternalDependencyError(collaborator, operation, str(exc) or type(exc).__name__)
    error.__cause__ = exc
    logger.warning(
        "external_dependency_failed",
        extra={
            "collaborator": collaborator,
            "operation": operation,
            **{k: str(v) for k, v in context.items()},
        },
        exc_info=(type(error), error, exc.__traceback__),
    )
    return error
