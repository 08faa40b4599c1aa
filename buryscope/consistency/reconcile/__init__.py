"""
Auto-Fix Reconciler

Repairs diagnosed cache gaps and re-verifies after a settle delay.
"""

from .contracts import RepairResult, RepairStatus, RepairSummary, VerifiedRepair
from .core import summarize_repairs
from .shell import AutoFixReconciler

__all__ = [
    "RepairResult",
    "RepairStatus",
    "RepairSummary",
    "VerifiedRepair",
    "summarize_repairs",
    "AutoFixReconciler",
]
