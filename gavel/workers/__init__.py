"""Background workers."""
from .reconciliation_worker import run_reconciliation_sweep, start_reconciliation_worker

__all__ = ["run_reconciliation_sweep", "start_reconciliation_worker"]
