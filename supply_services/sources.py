"""
Upstream ports -- cabinet dispensing feed and item catalog.

Contract:
    DispensedEventSource.fetch_events() returns the dispensing events in a UTC
    window, optionally narrowed to one item code or one item type.
    ItemCatalog.get_item() / get_items() resolve item codes to names and types.
    Both ports are read-only.  An adapter that cannot reach its backing store
    raises UpstreamUnavailableError.
    A single-code lookup the store rejects raises ItemLookupError; the
    reconciliation service excludes that code and carries on.

Adapters:
    - InMemoryDispensedEventSource / InMemoryItemCatalog: fixed data, for
      tests and embedding.
    - SqlDispensedEventSource / SqlItemCatalog: the cabinet inventory tables
      (itemstock, item, itemtype).  These tables belong to the inventory
      subsystem; they are declared on their own MetaData and are never created
      by supply_kernel.db.create_tables().

Architecture: supply_services.  May import supply_kernel.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DataError, SQLAlchemyError
from sqlalchemy.orm import Session

from supply_kernel.domain.time_window import TimeWindow, to_utc
from supply_kernel.exceptions import ItemLookupError, UpstreamUnavailableError
from supply_kernel.logging_config import get_logger

logger = get_logger("services.sources")


# ============================================================================
# Value objects
# ============================================================================


@dataclass(frozen=True)
class DispensedEvent:
    """One unit taken out of a cabinet; one RFID tag is one unit."""

    item_code: str
    dispensed_at: datetime
    quantity: int = 1
    tag_id: str | None = None
    item_name: str | None = None
    item_type_id: int | None = None


@dataclass(frozen=True)
class CatalogItem:
    item_code: str
    item_name: str | None = None
    item_type_id: int | None = None
    item_type_name: str | None = None


# ============================================================================
# Ports
# ============================================================================


@runtime_checkable
class DispensedEventSource(Protocol):
    """Read-only cabinet dispensing feed."""

    def fetch_events(
        self,
        *,
        window: TimeWindow,
        item_code: str | None = None,
        item_type_id: int | None = None,
    ) -> list[DispensedEvent]: ...


@runtime_checkable
class ItemCatalog(Protocol):
    """Read-only item-code lookup."""

    def get_item(self, item_code: str) -> CatalogItem | None: ...

    def get_items(self, item_codes: Iterable[str]) -> dict[str, CatalogItem]: ...


# ============================================================================
# In-memory adapters
# ============================================================================


class InMemoryDispensedEventSource:
    def __init__(
        self,
        events: Iterable[DispensedEvent] = (),
        catalog: ItemCatalog | None = None,
    ):
        self._events = list(events)
        self._catalog = catalog

    def add(self, event: DispensedEvent) -> None:
        self._events.append(event)

    def fetch_events(
        self,
        *,
        window: TimeWindow,
        item_code: str | None = None,
        item_type_id: int | None = None,
    ) -> list[DispensedEvent]:
        events = []
        for event in self._events:
            if item_code and event.item_code != item_code:
                continue
            if item_type_id is not None and self._type_of(event) != item_type_id:
                continue
            if not window.contains(event.dispensed_at):
                continue
            events.append(event)
        return sorted(events, key=lambda e: (to_utc(e.dispensed_at), e.item_code))

    def _type_of(self, event: DispensedEvent) -> int | None:
        if event.item_type_id is not None:
            return event.item_type_id
        if self._catalog is not None:
            item = self._catalog.get_item(event.item_code)
            return item.item_type_id if item else None
        return None


class InMemoryItemCatalog:
    def __init__(self, items: Iterable[CatalogItem] = ()):
        self._items = {item.item_code: item for item in items}

    def add(self, item: CatalogItem) -> None:
        self._items[item.item_code] = item

    def get_item(self, item_code: str) -> CatalogItem | None:
        return self._items.get(item_code)

    def get_items(self, item_codes: Iterable[str]) -> dict[str, CatalogItem]:
        return {
            code: self._items[code] for code in set(item_codes) if code in self._items
        }


# ============================================================================
# SQL adapters over the cabinet inventory tables
# ============================================================================

inventory_metadata = MetaData()

itemstock_table = Table(
    "itemstock",
    inventory_metadata,
    Column("RowID", Integer, primary_key=True, autoincrement=True),
    Column("ItemCode", String(50), nullable=False, index=True),
    Column("RfidCode", String(100), nullable=True),
    # 1 while the tag is in the cabinet, 0 once dispensed
    Column("IsStock", Integer, nullable=False, default=1),
    Column("LastCabinetModify", DateTime, nullable=True, index=True),
)

item_table = Table(
    "item",
    inventory_metadata,
    Column("itemcode", String(50), primary_key=True),
    Column("itemname", String(255), nullable=True),
    Column("itemtypeID", Integer, nullable=True),
)

itemtype_table = Table(
    "itemtype",
    inventory_metadata,
    Column("ID", Integer, primary_key=True),
    Column("TypeName", String(100), nullable=True),
)


def create_inventory_tables(engine: Engine) -> None:
    """Create the inventory tables (local runs and tests only)."""
    inventory_metadata.create_all(engine)


def _naive_utc(moment: datetime) -> datetime:
    # itemstock stores naive UTC timestamps
    return to_utc(moment).replace(tzinfo=None)


class SqlDispensedEventSource:
    """Dispensing events read from itemstock rows with IsStock = 0."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def fetch_events(
        self,
        *,
        window: TimeWindow,
        item_code: str | None = None,
        item_type_id: int | None = None,
    ) -> list[DispensedEvent]:
        stock = itemstock_table.c
        query = (
            select(
                stock.ItemCode,
                stock.RfidCode,
                stock.LastCabinetModify,
                item_table.c.itemname,
                item_table.c.itemtypeID,
            )
            .select_from(
                itemstock_table.outerjoin(
                    item_table, item_table.c.itemcode == stock.ItemCode
                )
            )
            .where(stock.IsStock == 0)
            .where(stock.LastCabinetModify.is_not(None))
            .order_by(stock.LastCabinetModify, stock.ItemCode)
        )
        if window.start is not None:
            query = query.where(stock.LastCabinetModify >= _naive_utc(window.start))
        if window.end is not None:
            end = _naive_utc(window.end)
            query = query.where(
                stock.LastCabinetModify <= end
                if window.end_inclusive
                else stock.LastCabinetModify < end
            )
        if item_code:
            query = query.where(stock.ItemCode == item_code)
        if item_type_id is not None:
            query = query.where(item_table.c.itemtypeID == item_type_id)

        try:
            with self._session_factory() as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as exc:
            logger.error("dispensed_event_fetch_failed", extra={"error": str(exc)})
            raise UpstreamUnavailableError("dispensed_events", str(exc)) from exc

        return [
            DispensedEvent(
                item_code=code,
                dispensed_at=to_utc(modified),
                quantity=1,
                tag_id=rfid,
                item_name=name,
                item_type_id=type_id,
            )
            for code, rfid, modified, name, type_id in rows
        ]


class SqlItemCatalog:
    """Item names and types read from the item and itemtype tables."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _query(self):
        return select(
            item_table.c.itemcode,
            item_table.c.itemname,
            item_table.c.itemtypeID,
            itemtype_table.c.TypeName,
        ).select_from(
            item_table.outerjoin(
                itemtype_table, itemtype_table.c.ID == item_table.c.itemtypeID
            )
        )

    def get_item(self, item_code: str) -> CatalogItem | None:
        """
        Look up one item code.

        Raises:
            ItemLookupError: the database rejected this lookup (DataError).
            UpstreamUnavailableError: any other storage failure.
        """
        try:
            with self._session_factory() as session:
                row = session.execute(
                    self._query().where(item_table.c.itemcode == item_code)
                ).first()
        except DataError as exc:
            logger.warning(
                "item_lookup_rejected",
                extra={"item_code": item_code, "error": str(exc)},
            )
            raise ItemLookupError(item_code, str(exc)) from exc
        except SQLAlchemyError as exc:
            logger.error("item_catalog_lookup_failed", extra={"error": str(exc)})
            raise UpstreamUnavailableError("item_catalog", str(exc)) from exc

        if row is None:
            return None
        code, name, type_id, type_name = row
        return CatalogItem(
            item_code=code,
            item_name=name,
            item_type_id=type_id,
            item_type_name=type_name,
        )

    def get_items(self, item_codes: Iterable[str]) -> dict[str, CatalogItem]:
        codes = sorted(set(item_codes))
        if not codes:
            return {}
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    self._query().where(item_table.c.itemcode.in_(codes))
                ).all()
        except SQLAlchemyError as exc:
            logger.error("item_catalog_lookup_failed", extra={"error": str(exc)})
            raise UpstreamUnavailableError("item_catalog", str(exc)) from exc

        return {
            code: CatalogItem(
                item_code=code,
                item_name=name,
                item_type_id=type_id,
                item_type_name=type_name,
            )
            for code, name, type_id, type_name in rows
        }
