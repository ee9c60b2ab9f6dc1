"""
Settings loader (``supply_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into ``SupplySettings``.  Services
never call this directly; runtime settings come from
``supply_config.get_active_settings()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``settings_id`` / ``version``  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from supply_kernel.domain.time_window import get_zone
from supply_config.schema import DatabaseSettings, SupplySettings


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=str(data.get("url", defaults.url)),
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_positive_int(data.get("pool_size", defaults.pool_size), "database.pool_size"),
        max_overflow=int(data.get("max_overflow", defaults.max_overflow)),
        pool_timeout=_positive_int(
            data.get("pool_timeout", defaults.pool_timeout), "database.pool_timeout"
        ),
        pool_recycle=_positive_int(
            data.get("pool_recycle", defaults.pool_recycle), "database.pool_recycle"
        ),
    )


def parse_settings(data: dict[str, Any]) -> SupplySettings:
    """
    Parse a settings dict.

    Raises:
        KeyError: ``settings_id`` or ``version`` missing.
        ValueError: a value is out of range or the timezone is unknown.
    """
    pagination = data.get("pagination") or {}
    audit = data.get("audit") or {}
    reconciliation = data.get("reconciliation") or {}

    default_limit = _positive_int(pagination.get("default_limit", 10), "pagination.default_limit")
    max_limit = _positive_int(pagination.get("max_limit", 100), "pagination.max_limit")
    if default_limit > max_limit:
        raise ValueError(
            f"pagination.default_limit ({default_limit}) exceeds max_limit ({max_limit})"
        )

    max_codes = reconciliation.get("max_item_codes")
    if max_codes is not None:
        max_codes = _positive_int(max_codes, "reconciliation.max_item_codes")

    timezone_name = str(data.get("timezone") or "UTC")
    get_zone(timezone_name)

    return SupplySettings(
        settings_id=data["settings_id"],
        version=int(data["version"]),
        database=parse_database(data.get("database") or {}),
        timezone=timezone_name,
        default_page_limit=default_limit,
        max_page_limit=max_limit,
        audit_queue_size=_positive_int(audit.get("queue_size", 1000), "audit.queue_size"),
        max_comparison_item_codes=max_codes,
        checksum=compute_checksum(data),
    )


def load_settings(path: Path) -> SupplySettings:
    return parse_settings(load_yaml_file(path))
