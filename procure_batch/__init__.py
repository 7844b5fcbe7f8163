"""
procure_batch -- scheduled maintenance for the procurement kernel.

Runs the recurring jobs the workflow depends on: the stale-reservation
sweep and outbox dispatch.  Each item of a run executes in its own
SAVEPOINT so one bad budget code or notification does not abort the rest.
"""
