"""
Configuration core - pure parsing, defaults and validation of settings.
"""

from dataclasses import fields, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .contracts import ConfigViolation, Environment, Settings


ENV_PREFIX = "BURYSCOPE_"

# Environment variable suffix -> (Settings field, parser name)
ENV_FIELDS: Dict[str, Tuple[str, str]] = {
    "SOURCE_BASE_URL": ("source_base_url", "str"),
    "ACCESS_TOKEN": ("access_token", "str"),
    "PROJECT_ID": ("project_id", "str"),
    "PAGE_SIZE": ("page_size", "int"),
    "MAX_PAGES": ("max_pages", "int"),
    "TRACKING_POINT_IDS": ("tracking_point_ids", "int_list"),
    "BACKEND_BASE_URL": ("backend_base_url", "str"),
    "DATABASE_URL": ("database_url", "str"),
    "REDIS_URL": ("redis_url", "str"),
    "DURABLE_KEY_PREFIX": ("durable_key_prefix", "str"),
    "DURABLE_TTL_DAYS": ("durable_ttl_days", "int"),
    "MEMORY_MAX_ENTRIES": ("memory_max_entries", "int"),
    "DIAGNOSTIC_TIMEOUT_SECONDS": ("diagnostic_timeout_seconds", "float"),
    "BULK_FETCH_TIMEOUT_SECONDS": ("bulk_fetch_timeout_seconds", "float"),
    "QUICK_CHECK_BUDGET_SECONDS": ("quick_check_budget_seconds", "float"),
    "TIMEZONE": ("timezone", "str"),
    "PRELOAD_WINDOW_DAYS": ("preload_window_days", "int"),
    "COUNT_MISMATCH_HIGH_RATIO": ("count_mismatch_high_ratio", "float"),
    "MAX_ENTRY_AGE_HOURS": ("max_entry_age_hours", "float"),
    "QUICK_CHECK_WINDOW_DAYS": ("quick_check_window_days", "int"),
    "MAX_PARALLEL_REPAIRS": ("max_parallel_repairs", "int"),
    "SETTLE_DELAY_SECONDS": ("settle_delay_seconds", "float"),
    "HEALTH_INTERVAL_SECONDS": ("health_interval_seconds", "float"),
    "HEALTH_INITIAL_DELAY_SECONDS": ("health_initial_delay_seconds", "float"),
    "HEALTH_MONITOR_ENABLED": ("health_monitor_enabled", "bool"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def create_development_defaults() -> Dict[str, Any]:
    return {
        "environment": Environment.DEVELOPMENT,
        "page_size": 1000,
        "health_interval_seconds": 600.0,
    }


def create_production_defaults() -> Dict[str, Any]:
    # Production vendor quota is tighter; smaller pages, same cap in records.
    return {
        "environment": Environment.PRODUCTION,
        "page_size": 100,
        "max_pages": 500,
        "health_interval_seconds": 600.0,
    }


def parse_environment(raw: Optional[str]) -> Environment:
    if not raw:
        return Environment.DEVELOPMENT
    try:
        return Environment(raw.strip().lower())
    except ValueError:
        return Environment.DEVELOPMENT


def _parse_value(raw: str, kind: str) -> Any:
    text = raw.strip()
    if kind == "str":
        return text
    if kind == "int":
        return int(text)
    if kind == "float":
        return float(text)
    if kind == "bool":
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if kind == "int_list":
        if not text:
            return ()
        ids = []
        for part in text.split(","):
            part = part.strip()
            if part:
                ids.append(int(part))
        # dedupe, keep order
        return tuple(dict.fromkeys(ids))
    raise ValueError(f"unknown parser {kind}")


def parse_overrides(
    environ: Mapping[str, str]
) -> Tuple[Dict[str, Any], List[ConfigViolation]]:
    """
    Extract ``BURYSCOPE_*`` overrides from an environment mapping.

    Returns:
        (field overrides, parse violations)
    """
    overrides: Dict[str, Any] = {}
    violations: List[ConfigViolation] = []

    for suffix, (field_name, kind) in ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        try:
            overrides[field_name] = _parse_value(raw, kind)
        except ValueError as e:
            shown = None if field_name == "access_token" else raw
            violations.append(ConfigViolation(ENV_PREFIX + suffix, str(e), shown))

    return overrides, violations


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_settings(settings: Settings) -> List[ConfigViolation]:
    """Every rule violation in the settings, empty when valid."""
    violations: List[ConfigViolation] = []

    for name in ("source_base_url", "backend_base_url"):
        value = getattr(settings, name)
        if not _is_http_url(value):
            violations.append(ConfigViolation(name, "must be an http(s) URL", value))

    if not settings.project_id or ":" in settings.project_id:
        violations.append(
            ConfigViolation("project_id", "must be non-empty and must not contain ':'", settings.project_id)
        )

    if not 1 <= settings.page_size <= 5000:
        violations.append(ConfigViolation("page_size", "must be between 1 and 5000", str(settings.page_size)))

    positive_ints = (
        "max_pages", "durable_ttl_days", "memory_max_entries",
        "preload_window_days", "quick_check_window_days", "max_parallel_repairs",
    )
    for name in positive_ints:
        if getattr(settings, name) < 1:
            violations.append(ConfigViolation(name, "must be at least 1", str(getattr(settings, name))))

    positive_floats = (
        "diagnostic_timeout_seconds", "bulk_fetch_timeout_seconds",
        "quick_check_budget_seconds", "health_interval_seconds", "max_entry_age_hours",
    )
    for name in positive_floats:
        if getattr(settings, name) <= 0:
            violations.append(ConfigViolation(name, "must be positive", str(getattr(settings, name))))

    for name in ("settle_delay_seconds", "health_initial_delay_seconds"):
        if getattr(settings, name) < 0:
            violations.append(ConfigViolation(name, "must not be negative", str(getattr(settings, name))))

    if not 0 < settings.count_mismatch_high_ratio <= 1:
        violations.append(
            ConfigViolation(
                "count_mismatch_high_ratio", "must be in (0, 1]", str(settings.count_mismatch_high_ratio)
            )
        )

    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        violations.append(ConfigViolation("timezone", "must be an IANA time zone name", settings.timezone))

    if any(point_id <= 0 for point_id in settings.tracking_point_ids):
        violations.append(ConfigViolation("tracking_point_ids", "ids must be positive integers"))

    return violations


def build_settings(environment: Environment, overrides: Mapping[str, Any]) -> Settings:
    """Apply environment defaults, then explicit overrides, onto ``Settings``."""
    if environment == Environment.PRODUCTION:
        values = create_production_defaults()
    else:
        values = create_development_defaults()

    known = {f.name for f in fields(Settings)}
    values.update({k: v for k, v in overrides.items() if k in known})
    return replace(Settings(), **values)
