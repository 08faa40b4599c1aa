"""
Consistency Diagnostic Engine

Finds divergences between cache tiers and classifies them by severity.
"""

from .contracts import (
    DiagnosticIssue,
    DiagnosticReport,
    DiagnosticRunConflict,
    DiagnosticState,
    HealthStatus,
    IssueKind,
    QuickCheckResult,
    Severity,
)
from .core import health_from_issues, summarize_issues
from .shell import BackendHealthProbe, DiagnosticEngine

__all__ = [
    "DiagnosticIssue",
    "DiagnosticReport",
    "DiagnosticRunConflict",
    "DiagnosticState",
    "HealthStatus",
    "IssueKind",
    "QuickCheckResult",
    "Severity",
    "health_from_issues",
    "summarize_issues",
    "BackendHealthProbe",
    "DiagnosticEngine",
]
