"""Scheduling package public API.

Primary entrypoint:
- JobScheduler: selects stale active resources and dispatches index runs.

Utilities:
- JobRunLedger: durable record of every run attempt.
- JobKind, job_kind_for: job kind derived from the resource kind.
"""

from .ledger import JobRunLedger, cap_log
from .scheduler import EXIT_CANCELLED, EXIT_INVOCATION_FAILED, JobScheduler
from .types import JobKind, job_kind_for, make_job_id

__all__ = [
    "JobScheduler",
    "JobRunLedger",
    "JobKind",
    "job_kind_for",
    "make_job_id",
    "cap_log",
    "EXIT_CANCELLED",
    "EXIT_INVOCATION_FAILED",
]
