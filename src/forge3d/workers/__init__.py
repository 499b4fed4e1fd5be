"""Background workers for async processing tasks."""

from forge3d.workers.reconciliation_worker import run_reconciliation_worker

__all__ = [
    "run_reconciliation_worker",
]
