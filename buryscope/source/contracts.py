"""
Remote Analytics Source - Type Definitions and Contracts

Defines the request/response shapes of the vendor bury-point search
endpoint and the failure taxonomy of calls made against it.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from ..common.contracts import BuryscopeError


SEARCH_PATH = "/tracker/buryPointTest/search"


@dataclass(frozen=True)
class SearchRequest:
    """One page request for a (project, tracking point, day)."""

    project_id: str
    tracking_point_id: int
    day: date
    page: int = 1
    page_size: int = 1000
    order: str = "descend"
    data_type: str = "list"
    filter_list: List[Dict[str, Any]] = field(default_factory=list)
    calc_info: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchPage:
    """One page of raw event records."""

    request: SearchRequest
    records: List[Dict[str, Any]]
    total: Optional[int] = None

    @property
    def is_last(self) -> bool:
        """A short page signals the end of the day's data."""
        return len(self.records) < self.request.page_size


class AnalyticsSource(Protocol):
    """Protocol for anything that can serve vendor search pages."""

    async def search_page(
        self,
        request: SearchRequest,
        timeout: Optional[float] = None
    ) -> SearchPage:
        ...


class SourceError(BuryscopeError):
    """Base class for remote analytics source failures."""

    def __init__(self, message: str, request: Optional[SearchRequest] = None):
        self.request = request
        super().__init__(message)


class NetworkFailure(SourceError):
    """Source unreachable or timed out. Retried at the next scheduled check."""
    pass


class AuthFailure(SourceError):
    """Access token rejected. Surfaced immediately, never retried."""
    pass


class SourceApplicationError(SourceError):
    """Vendor answered with ``code != 200`` or a malformed envelope."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        request: Optional[SearchRequest] = None
    ):
        self.code = code
        super().__init__(message, request)
