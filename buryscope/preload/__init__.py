"""
Preload/Fetch Orchestrator

Resolves date ranges through the tiered cache and warms it proactively.
"""

from .contracts import DayFetch, DayFetchFailure, PreloadReport, PreloadStatus
from .shell import PreloadOrchestrator

__all__ = [
    "DayFetch",
    "DayFetchFailure",
    "PreloadReport",
    "PreloadStatus",
    "PreloadOrchestrator",
]
