"""
Consistency Diagnostic Engine - Type Definitions and Contracts

Defines diagnostic issues, reports, the run state machine and the
aggregate health classification.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from ...cache.tiers.contracts import CacheKey
from ...common.contracts import BuryscopeError


class Severity(Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Lower rank sorts first."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


class IssueKind(Enum):
    MISSING_IN_BACKEND = "missing-in-backend"
    COUNT_MISMATCH = "count-mismatch"
    STALE_MEMORY_COPY = "stale-memory-copy"
    ABSENT_EVERYWHERE = "absent-everywhere"
    RECENT_CACHE_MISSING = "recent-cache-missing"
    AGED_ENTRY = "aged-entry"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class DiagnosticState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    REPORTED = "reported"
    FAILED = "failed"


class SuggestionAction(Enum):
    IMMEDIATE_CACHE_REFRESH = "IMMEDIATE_CACHE_REFRESH"
    PRELOAD_MISSING_DATA = "PRELOAD_MISSING_DATA"
    VALIDATE_DATA_SOURCE = "VALIDATE_DATA_SOURCE"
    ROUTINE_MAINTENANCE = "ROUTINE_MAINTENANCE"


@dataclass(frozen=True)
class DiagnosticIssue:
    """
    One divergence found for one cache key.

    ``expected_count`` is the reference tier's record count (backend, or
    durable-local when the backend has nothing); ``actual_count`` is the
    diverging tier's count.
    """

    key: CacheKey
    severity: Severity
    kind: IssueKind
    detected_at: datetime
    expected_count: Optional[int] = None
    actual_count: Optional[int] = None
    detail: str = ""

    @property
    def fingerprint(self) -> str:
        return self.key.fingerprint()


@dataclass(frozen=True)
class Suggestion:
    action: SuggestionAction
    priority: Severity
    message: str
    fingerprints: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DiagnosticReport:
    """
    Outcome of one diagnostic run.

    ``issues`` are ordered by severity, then date, then tracking point.
    A cancelled run still reports what it saw before stopping.
    """

    issues: Tuple[DiagnosticIssue, ...]
    success: bool
    started_at: datetime
    finished_at: datetime
    error: Optional[str] = None
    cancelled: bool = False
    keys_scanned: int = 0
    keys_unreadable: int = 0
    suggestions: Tuple[Suggestion, ...] = ()

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class ScanOutcome:
    """Issues and counters collected over a set of keys."""

    issues: Tuple[DiagnosticIssue, ...] = ()
    keys_scanned: int = 0
    keys_unreadable: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class QuickCheckResult:
    status: HealthStatus
    checked_at: datetime
    issues: Tuple[DiagnosticIssue, ...] = ()
    keys_scanned: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class DiagnosticStatus:
    state: DiagnosticState
    last_report: Optional[DiagnosticReport] = None
    issue_count: int = 0


@dataclass(frozen=True)
class ClassificationThresholds:
    count_mismatch_high_ratio: float = 0.25
    max_entry_age_hours: float = 24.0
    recent_days: int = 2
    timezone: str = "UTC"


BackendProbe = Callable[[], Awaitable[bool]]


class DiagnosticRunConflict(BuryscopeError):
    """Raised when a full diagnostic is requested while one is running."""

    def __init__(self, message: str, running_since: Optional[datetime] = None):
        self.running_since = running_since
        super().__init__(message)
