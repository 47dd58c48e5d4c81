from .diff import ReconcilePlan, Refresh, Retire, diff
from .engine import ReconcileResult, ReconciliationEngine

__all__ = [
    "ReconcilePlan",
    "Refresh",
    "Retire",
    "diff",
    "ReconcileResult",
    "ReconciliationEngine",
]
