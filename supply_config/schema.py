"""
SupplySettings schema.

Runtime settings for the supply platform.  YAML files in ``sets/`` are
parsed into this frozen dataclass by the loader; environment overrides are
applied on top by ``supply_config.get_active_settings()``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings passed to ``init_engine_from_url``."""

    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800


@dataclass(frozen=True)
class SupplySettings:
    settings_id: str
    version: int
    database: DatabaseSettings
    timezone: str = "UTC"
    default_page_limit: int = 10
    max_page_limit: int = 100
    audit_queue_size: int = 1000
    # None disables the cap
    max_comparison_item_codes: int | None = None
    checksum: str = ""

    @property
    def database_url(self) -> str:
        return self.database.url
