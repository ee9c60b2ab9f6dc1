"""
supply_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_settings()`` is the only way services and entry points
    obtain settings.  It reads a YAML settings file (``sets/default.yaml``
    unless told otherwise) and applies environment overrides.

Architecture position:
    Configuration -- sits above ``supply_kernel`` and below
    ``supply_services``.  The kernel MUST NEVER import from
    ``supply_config``.

Environment:
    SUPPLY_CONFIG_FILE   -- path of the YAML file to load.
    SUPPLY_DATABASE_URL  -- overrides ``database.url``.
    SUPPLY_TIMEZONE      -- overrides ``timezone``.

Audit relevance:
    Every call emits a ``SUPPLY_CONFIG_TRACE`` log entry with the settings
    id, version, checksum and the overrides applied.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from supply_kernel.domain.time_window import get_zone
from supply_config.loader import compute_checksum, load_settings, parse_settings
from supply_config.schema import DatabaseSettings, SupplySettings

_logger = logging.getLogger("supply_kernel.config")

_DEFAULT_SETTINGS_FILE = Path(__file__).parent / "sets" / "default.yaml"

ENV_CONFIG_FILE = "SUPPLY_CONFIG_FILE"
ENV_DATABASE_URL = "SUPPLY_DATABASE_URL"
ENV_TIMEZONE = "SUPPLY_TIMEZONE"


def get_active_settings(path: Path | str | None = None) -> SupplySettings:
    """
    Load settings and apply environment overrides.

    Resolution order for the file: ``path`` argument, then
    SUPPLY_CONFIG_FILE, then the packaged ``sets/default.yaml``.

    Raises:
        FileNotFoundError: the settings file does not exist.
        ValueError: a value is invalid, including an unknown timezone
            override.
    """
    source = Path(path or os.environ.get(ENV_CONFIG_FILE) or _DEFAULT_SETTINGS_FILE)
    settings = load_settings(source)

    overrides: list[str] = []
    database_url = os.environ.get(ENV_DATABASE_URL)
    if database_url:
        settings = dataclasses.replace(
            settings,
            database=dataclasses.replace(settings.database, url=database_url),
        )
        overrides.append(ENV_DATABASE_URL)

    timezone_name = os.environ.get(ENV_TIMEZONE)
    if timezone_name:
        get_zone(timezone_name)
        settings = dataclasses.replace(settings, timezone=timezone_name)
        overrides.append(ENV_TIMEZONE)

    _logger.info(
        "SUPPLY_CONFIG_TRACE",
        extra={
            "trace_type": "SUPPLY_CONFIG_TRACE",
            "settings_id": settings.settings_id,
            "settings_version": settings.version,
            "checksum": settings.checksum,
            "source": str(source),
            "overrides": overrides,
            "timezone": settings.timezone,
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "SupplySettings",
    "compute_checksum",
    "get_active_settings",
    "load_settings",
    "parse_settings",
]
