"""
Auto-Fix Reconciler - Type Definitions and Contracts
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from ...cache.tiers.contracts import CacheKey
from ..diagnostics.contracts import DiagnosticIssue, DiagnosticReport


class RepairStatus(Enum):
    FIXED = "FIXED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RepairResult:
    """Outcome of repairing one issue."""

    issue: DiagnosticIssue
    status: RepairStatus
    detail: str
    record_count: Optional[int] = None

    @property
    def fixed(self) -> bool:
        return self.status == RepairStatus.FIXED


@dataclass(frozen=True)
class RepairTask:
    """All issues sharing one fingerprint, repaired by a single refresh."""

    key: CacheKey
    issues: Tuple[DiagnosticIssue, ...]


@dataclass(frozen=True)
class RepairSummary:
    fixed: int
    failed: int
    message: str


@dataclass(frozen=True)
class VerifiedRepair:
    """A repair batch followed by a re-check after the settle delay."""

    results: Tuple[RepairResult, ...]
    summary: RepairSummary
    verification: DiagnosticReport

    @property
    def remaining_issues(self) -> int:
        return len(self.verification.issues)
