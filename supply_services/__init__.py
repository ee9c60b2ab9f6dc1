"""
supply_services -- orchestration above the supply kernel.

Holds the upstream ports (dispensing feed, item catalog), the
reconciliation service and the SupplyCommandService facade, plus
``build_command_service()`` which wires them from settings.
"""

from __future__ import annotations

from supply_config import get_active_settings
from supply_config.schema import SupplySettings
from supply_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from supply_kernel.db.immutability import register_immutability_listeners
from supply_kernel.domain.clock import Clock
from supply_kernel.services.audit_sink import AuditSink, QueuedAuditSink
from supply_services.reconciliation_service import DispensedItems, ReconciliationService
from supply_services.sources import (
    CatalogItem,
    DispensedEvent,
    DispensedEventSource,
    InMemoryDispensedEventSource,
    InMemoryItemCatalog,
    ItemCatalog,
    SqlDispensedEventSource,
    SqlItemCatalog,
)
from supply_services.supply_command_service import SupplyCommandService


def build_command_service(
    *,
    settings: SupplySettings | None = None,
    event_source: DispensedEventSource | None = None,
    catalog: ItemCatalog | None = None,
    audit_sink: AuditSink | None = None,
    clock: Clock | None = None,
    create_schema: bool = True,
) -> SupplyCommandService:
    """
    Initialise the engine from settings and return a ready facade.

    Without explicit ports the SQL adapters over the cabinet inventory
    tables are used.  Without an audit sink a QueuedAuditSink writing to
    the same database is started; the caller closes it on shutdown.
    """
    settings = settings or get_active_settings()
    db = settings.database
    init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
    )
    if create_schema:
        create_tables()
    register_immutability_listeners()

    session_factory = get_session_factory()
    return SupplyCommandService(
        session_factory,
        event_source or SqlDispensedEventSource(session_factory),
        catalog or SqlItemCatalog(session_factory),
        settings=settings,
        audit_sink=audit_sink or QueuedAuditSink(
            session_factory, max_queue_size=settings.audit_queue_size,
        ),
        clock=clock,
    )


__all__ = [
    "CatalogItem",
    "DispensedEvent",
    "DispensedEventSource",
    "DispensedItems",
    "InMemoryDispensedEventSource",
    "InMemoryItemCatalog",
    "ItemCatalog",
    "ReconciliationService",
    "SqlDispensedEventSource",
    "SqlItemCatalog",
    "SupplyCommandService",
    "build_command_service",
]
