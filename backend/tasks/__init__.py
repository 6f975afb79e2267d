# tasks/__init__.py
from tasks.reconciliation_loop import ReconciliationLoop, ReconciliationLoopConfig

__all__ = ["ReconciliationLoop", "ReconciliationLoopConfig"]
