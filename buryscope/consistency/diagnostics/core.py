"""
Consistency Diagnostic Engine - Core Functions

Pure classification of per-key tier snapshots into issues, ordering,
suggestions and health aggregation.
NEVER include I/O operations in this module.
"""

from collections import Counter
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Iterable, List, Sequence, Tuple

from ...cache.tiers.contracts import CacheEntry, TierName, TierSnapshot
from ...common.core import local_today, pluralize
from .contracts import (
    ClassificationThresholds,
    DiagnosticIssue,
    HealthStatus,
    IssueKind,
    Severity,
    Suggestion,
    SuggestionAction,
)


def relative_difference(reference: int, actual: int) -> float:
    """
    |reference - actual| relative to the reference count.

    An empty reference with any records elsewhere counts as a total
    divergence.
    """
    if reference == actual:
        return 0.0
    if reference == 0:
        return 1.0
    return abs(reference - actual) / reference


def count_mismatch_severity(
    reference_count: int,
    actual_count: int,
    high_ratio: float,
    memory_exceeds_backend: bool = False
) -> Severity:
    """
    HIGH above the relative threshold, or whenever memory holds more
    records than the backend; MEDIUM otherwise.

    MUST be deterministic.
    """
    if memory_exceeds_backend:
        return Severity.HIGH
    if relative_difference(reference_count, actual_count) > high_ratio:
        return Severity.HIGH
    return Severity.MEDIUM


def _version(entry: CacheEntry) -> datetime:
    return entry.updated_at or entry.fetched_at


def is_recent_day(day: date, now: datetime, recent_days: int, tz_name: str = "UTC") -> bool:
    today = local_today(now, tz_name)
    return today - timedelta(days=recent_days - 1) <= day <= today


def classify_snapshot(
    snapshot: TierSnapshot,
    now: datetime,
    thresholds: ClassificationThresholds
) -> List[DiagnosticIssue]:
    """
    Issues for one key given an error-free snapshot of every tier.

    Callers must not pass snapshots with unreadable tiers: a read error is
    not evidence of absence.

    MUST be deterministic.
    """
    key = snapshot.key
    memory = snapshot.entry(TierName.MEMORY)
    durable = snapshot.entry(TierName.DURABLE_LOCAL)
    backend = snapshot.entry(TierName.BACKEND)
    backend_configured = TierName.BACKEND in snapshot.reads

    def issue(severity: Severity, kind: IssueKind, expected=None, actual=None, detail="") -> DiagnosticIssue:
        return DiagnosticIssue(
            key=key,
            severity=severity,
            kind=kind,
            detected_at=now,
            expected_count=expected,
            actual_count=actual,
            detail=detail,
        )

    if memory is None and durable is None and backend is None:
        return [issue(Severity.LOW, IssueKind.ABSENT_EVERYWHERE, detail="never fetched")]

    issues: List[DiagnosticIssue] = []

    if backend_configured and backend is None:
        local = memory or durable
        issues.append(issue(
            Severity.HIGH,
            IssueKind.MISSING_IN_BACKEND,
            expected=local.record_count,
            actual=0,
            detail=f"cached in {local.source_tier.value} only",
        ))

    reference = backend or durable
    if reference is not None:
        candidates = [
            entry for entry in (memory, durable)
            if entry is not None and entry is not reference
        ]
        diverging = [entry for entry in candidates if entry.record_count != reference.record_count]
        if diverging:
            worst = max(diverging, key=lambda e: abs(e.record_count - reference.record_count))
            memory_exceeds_backend = (
                backend is not None
                and memory is not None
                and memory.record_count > backend.record_count
            )
            issues.append(issue(
                count_mismatch_severity(
                    reference.record_count,
                    worst.record_count,
                    thresholds.count_mismatch_high_ratio,
                    memory_exceeds_backend,
                ),
                IssueKind.COUNT_MISMATCH,
                expected=reference.record_count,
                actual=worst.record_count,
                detail=f"{worst.source_tier.value} vs {reference.source_tier.value}",
            ))

    if memory is not None and backend is not None and _version(memory) < _version(backend):
        issues.append(issue(
            Severity.MEDIUM,
            IssueKind.STALE_MEMORY_COPY,
            expected=backend.record_count,
            actual=memory.record_count,
            detail=f"memory copy predates backend update at {_version(backend).isoformat()}",
        ))

    if reference is not None and is_recent_day(key.date, now, thresholds.recent_days, thresholds.timezone):
        age = now - reference.fetched_at
        if age > timedelta(hours=thresholds.max_entry_age_hours):
            issues.append(issue(
                Severity.MEDIUM,
                IssueKind.AGED_ENTRY,
                expected=reference.record_count,
                actual=reference.record_count,
                detail=f"fetched {age.total_seconds() / 3600:.1f}h ago",
            ))

    return issues


def escalate_recent_absence(issues: Iterable[DiagnosticIssue]) -> List[DiagnosticIssue]:
    """
    Quick-check view of absence.

    Every key the quick check scans lies in the polled window, so a day
    with no copy in any tier is a HIGH recent-cache-missing issue rather
    than a LOW never-fetched one.

    MUST be deterministic.
    """
    return [
        replace(
            issue,
            severity=Severity.HIGH,
            kind=IssueKind.RECENT_CACHE_MISSING,
            detail="recent day not cached in any tier",
        )
        if issue.kind == IssueKind.ABSENT_EVERYWHERE else issue
        for issue in issues
    ]


def sort_issues(issues: Iterable[DiagnosticIssue]) -> Tuple[DiagnosticIssue, ...]:
    """Order by severity, then date, then tracking point, then kind."""
    return tuple(sorted(
        issues,
        key=lambda i: (i.severity.rank, i.key.date, i.key.tracking_point_id, i.kind.value),
    ))


def severity_counts(issues: Iterable[DiagnosticIssue]) -> Counter:
    return Counter(issue.severity for issue in issues)


def generate_suggestions(issues: Sequence[DiagnosticIssue]) -> Tuple[Suggestion, ...]:
    """
    Follow-up actions for a set of issues.

    MUST be deterministic.
    """
    counts = severity_counts(issues)
    suggestions: List[Suggestion] = []

    high = [i for i in issues if i.severity == Severity.HIGH]
    if high:
        suggestions.append(Suggestion(
            action=SuggestionAction.IMMEDIATE_CACHE_REFRESH,
            priority=Severity.HIGH,
            message=f"{pluralize(len(high), 'severe issue')} found, refresh the cache now",
            fingerprints=tuple(i.fingerprint for i in high),
        ))

    missing_kinds = (IssueKind.MISSING_IN_BACKEND, IssueKind.ABSENT_EVERYWHERE, IssueKind.RECENT_CACHE_MISSING)
    missing = [i for i in issues if i.kind in missing_kinds]
    if missing:
        suggestions.append(Suggestion(
            action=SuggestionAction.PRELOAD_MISSING_DATA,
            priority=Severity.HIGH,
            message="Some cached days are missing, preload them again",
            fingerprints=tuple(i.fingerprint for i in missing),
        ))

    mismatched = [i for i in issues if i.kind == IssueKind.COUNT_MISMATCH]
    if mismatched:
        suggestions.append(Suggestion(
            action=SuggestionAction.VALIDATE_DATA_SOURCE,
            priority=Severity.MEDIUM,
            message="Tiers disagree on record counts, a preload may have failed half-way",
            fingerprints=tuple(i.fingerprint for i in mismatched),
        ))

    minor = counts[Severity.MEDIUM] + counts[Severity.LOW]
    if minor:
        suggestions.append(Suggestion(
            action=SuggestionAction.ROUTINE_MAINTENANCE,
            priority=Severity.LOW,
            message=f"{pluralize(minor, 'minor issue')} found, schedule routine maintenance",
        ))

    return tuple(suggestions)


def health_from_issues(issues: Iterable[DiagnosticIssue]) -> HealthStatus:
    """
    HIGH -> critical, MEDIUM -> warning, anything else healthy.

    LOW issues are informational and do not degrade health.
    """
    counts = severity_counts(issues)
    if counts[Severity.HIGH]:
        return HealthStatus.CRITICAL
    if counts[Severity.MEDIUM]:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def summarize_issues(issues: Sequence[DiagnosticIssue], keys_unreadable: int = 0) -> str:
    """User-visible one-line summary, e.g. "3 issues found (1 HIGH, 2 MEDIUM)"."""
    if not issues:
        text = "No issues found"
    else:
        counts = severity_counts(issues)
        parts = [f"{counts[s]} {s.value}" for s in Severity if counts[s]]
        text = f"{pluralize(len(issues), 'issue')} found ({', '.join(parts)})"
    if keys_unreadable:
        text += f", {pluralize(keys_unreadable, 'key')} unreadable"
    return text
