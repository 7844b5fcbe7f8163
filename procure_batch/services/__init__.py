"""Batch services: the SAVEPOINT-per-item runner."""

from procure_batch.services.executor import BatchRunner

__all__ = ["BatchRunner"]
