from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..common.contracts import BuryscopeError


class Environment(Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the cache consistency stack."""

    environment: Environment = Environment.DEVELOPMENT

    # Remote analytics source
    source_base_url: str = "https://probe.yeepay.com"
    access_token: Optional[str] = None
    project_id: str = "event1021"
    page_size: int = 1000
    max_pages: int = 50
    tracking_point_ids: Tuple[int, ...] = ()

    # Backend authoritative store
    backend_base_url: str = "http://localhost:3004"
    database_url: str = "sqlite+aiosqlite:///./buryscope.db"

    # Durable-local tier
    redis_url: str = "redis://localhost:6379/0"
    durable_key_prefix: str = "buryscope:"
    durable_ttl_days: int = 30

    # Memory tier
    memory_max_entries: int = 2000

    # Timeouts (seconds)
    diagnostic_timeout_seconds: float = 10.0
    bulk_fetch_timeout_seconds: float = 30.0
    quick_check_budget_seconds: float = 10.0

    # Calendar days (today, trailing windows) are taken in this zone
    timezone: str = "UTC"

    # Orchestrator
    preload_window_days: int = 7

    # Diagnostics
    count_mismatch_high_ratio: float = 0.25
    max_entry_age_hours: float = 24.0
    quick_check_window_days: int = 2

    # Reconciliation
    max_parallel_repairs: int = 3
    settle_delay_seconds: float = 3.0

    # Health monitor
    health_interval_seconds: float = 600.0
    health_initial_delay_seconds: float = 3.0
    health_monitor_enabled: bool = True

    def masked_token(self) -> str:
        if not self.access_token:
            return "<unset>"
        if len(self.access_token) <= 8:
            return "*" * len(self.access_token)
        return self.access_token[:4] + "*" * (len(self.access_token) - 8) + self.access_token[-4:]

    def describe(self) -> Dict[str, object]:
        """Settings as a log-safe dict with the access token masked."""
        return {
            "environment": self.environment.value,
            "source_base_url": self.source_base_url,
            "access_token": self.masked_token(),
            "project_id": self.project_id,
            "tracking_point_ids": list(self.tracking_point_ids),
            "timezone": self.timezone,
            "backend_base_url": self.backend_base_url,
            "redis_url": self.redis_url,
            "page_size": self.page_size,
            "max_pages": self.max_pages,
            "settle_delay_seconds": self.settle_delay_seconds,
            "health_interval_seconds": self.health_interval_seconds,
        }


@dataclass(frozen=True)
class ConfigViolation:
    key: str
    message: str
    value: Optional[str] = None


class ConfigError(BuryscopeError):
    """Raised when settings cannot be loaded or fail validation."""

    def __init__(self, violations: List[ConfigViolation]):
        self.violations = violations
        details = "; ".join(f"{v.key}: {v.message}" for v in violations)
        super().__init__(f"Invalid configuration: {details}")
