import logging
import os
from typing import Mapping, Optional

from .contracts import ConfigError, Settings
from .core import build_settings, parse_environment, parse_overrides, validate_settings


logger = logging.getLogger(__name__)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from the process environment (or an explicit mapping).

    ``ENVIRONMENT`` selects the defaults profile; ``BURYSCOPE_*`` variables
    override single fields.

    Raises:
        ConfigError: listing every parse or validation violation
    """
    source = os.environ if environ is None else environ

    environment = parse_environment(source.get("ENVIRONMENT"))
    overrides, violations = parse_overrides(source)
    settings = build_settings(environment, overrides)
    violations.extend(validate_settings(settings))

    if violations:
        logger.error(f"Configuration validation failed: {[v.key for v in violations]}")
        raise ConfigError(violations)

    if not settings.access_token:
        logger.warning("No access token configured - remote analytics source calls will be rejected")
    if not settings.tracking_point_ids:
        logger.warning("No tracking points configured - preload and health checks will be no-ops")

    logger.info(
        "Configuration loaded",
        extra={"config": settings.describe()}
    )
    return settings
