"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable read-side structures returned by selectors and
    services: line items, return records, episodes, paged results and the
    statistics reports.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods exist as boundary converters but are only
    invoked from the selector and service layers (never from domain logic).

Invariants enforced:
    - Callers never receive ORM entities; every DTO is a frozen dataclass.
    - LineItemDTO.qty_pending == qty - qty_used_with_patient - qty_returned_to_cabinet.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Mapping, TypeVar
from uuid import UUID

from supply_kernel.domain.quantities import ItemStatus, ReturnReason, coerce_quantity
from supply_kernel.exceptions import InvalidFieldError

if TYPE_CHECKING:
    from supply_kernel.models.return_record import ReturnRecord as ReturnRecordModel
    from supply_kernel.models.usage_episode import (
        LineItem as LineItemModel,
    )
    from supply_kernel.models.usage_episode import (
        UsageEpisode as UsageEpisodeModel,
    )

T = TypeVar("T")


@dataclass(frozen=True)
class EpisodeRef:
    """Patient/episode context attached to line-item and return listings."""

    episode_id: UUID
    patient_hn: str
    en: str | None
    first_name: str | None
    last_name: str | None
    department_code: str | None
    usage_datetime: datetime

    @property
    def patient_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @classmethod
    def from_model(cls, model: UsageEpisodeModel) -> EpisodeRef:
        return cls(
            episode_id=model.id,
            patient_hn=model.patient_hn,
            en=model.en,
            first_name=model.first_name,
            last_name=model.last_name,
            department_code=model.department_code,
            usage_datetime=model.usage_datetime,
        )


@dataclass(frozen=True)
class ReturnRecordDTO:
    """One return event, optionally with its line item and episode context."""

    id: UUID
    line_item_id: UUID
    item_code: str
    qty_returned: int
    return_reason: ReturnReason
    return_by_user_id: str
    return_note: str | None
    return_datetime: datetime
    item_description: str | None = None
    episode: EpisodeRef | None = None

    @classmethod
    def from_model(
        cls, model: ReturnRecordModel, *, with_context: bool = False
    ) -> ReturnRecordDTO:
        """
        Convert a ReturnRecord ORM row.

        With ``with_context`` the owning line item and episode are loaded and
        copied in, as the return-history listing needs them.
        """
        item_description = None
        episode = None
        if with_context:
            line_item = model.line_item
            item_description = line_item.item_description
            episode = EpisodeRef.from_model(line_item.episode)
        return cls(
            id=model.id,
            line_item_id=model.line_item_id,
            item_code=model.item_code,
            qty_returned=model.qty_returned,
            return_reason=ReturnReason(model.return_reason),
            return_by_user_id=model.return_by_user_id,
            return_note=model.return_note,
            return_datetime=model.return_datetime,
            item_description=item_description,
            episode=episode,
        )


@dataclass(frozen=True)
class LineItemDTO:
    """
    A line item with its counters, derived status and return records.

    Guarantees:
        - qty_pending is computed, never stored.
        - return_records are ordered oldest first.
    """

    id: UUID
    episode_id: UUID
    line_no: int
    item_code: str
    item_description: str | None
    assession_no: str | None
    order_item_status: str | None
    uom: str | None
    qty: int
    qty_used_with_patient: int
    qty_returned_to_cabinet: int
    item_status: ItemStatus
    version: int
    created_at: datetime
    updated_at: datetime
    return_records: tuple[ReturnRecordDTO, ...] = ()
    episode: EpisodeRef | None = None

    @property
    def qty_pending(self) -> int:
        return self.qty - self.qty_used_with_patient - self.qty_returned_to_cabinet

    @classmethod
    def from_model(
        cls, model: LineItemModel, *, with_episode: bool = False
    ) -> LineItemDTO:
        return cls(
            id=model.id,
            episode_id=model.episode_id,
            line_no=model.line_no,
            item_code=model.item_code,
            item_description=model.item_description,
            assession_no=model.assession_no,
            order_item_status=model.order_item_status,
            uom=model.uom,
            qty=model.qty,
            qty_used_with_patient=model.qty_used_with_patient,
            qty_returned_to_cabinet=model.qty_returned_to_cabinet,
            item_status=ItemStatus(model.item_status),
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            return_records=tuple(
                ReturnRecordDTO.from_model(r) for r in model.return_records
            ),
            episode=EpisodeRef.from_model(model.episode) if with_episode else None,
        )


@dataclass(frozen=True)
class EpisodeDTO:
    """A usage episode with all header fields and its line items."""

    id: UUID
    hospital: str | None
    en: str | None
    patient_hn: str
    first_name: str | None
    last_name: str | None
    department_code: str | None
    usage_datetime: datetime
    usage_type: str | None
    purpose: str | None
    recorded_by_user_id: str | None
    billing_status: str | None
    billing_subtotal: Decimal
    billing_tax: Decimal
    billing_total: Decimal
    billing_currency: str
    twu: str | None
    print_location: str | None
    print_date: str | None
    time_print_date: str | None
    print_update_stamp: str | None
    created_at: datetime
    updated_at: datetime
    line_items: tuple[LineItemDTO, ...] = ()

    @property
    def patient_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @classmethod
    def from_model(cls, model: UsageEpisodeModel) -> EpisodeDTO:
        return cls(
            id=model.id,
            hospital=model.hospital,
            en=model.en,
            patient_hn=model.patient_hn,
            first_name=model.first_name,
            last_name=model.last_name,
            department_code=model.department_code,
            usage_datetime=model.usage_datetime,
            usage_type=model.usage_type,
            purpose=model.purpose,
            recorded_by_user_id=model.recorded_by_user_id,
            billing_status=model.billing_status,
            billing_subtotal=Decimal(model.billing_subtotal),
            billing_tax=Decimal(model.billing_tax),
            billing_total=Decimal(model.billing_total),
            billing_currency=model.billing_currency,
            twu=model.twu,
            print_location=model.print_location,
            print_date=model.print_date,
            time_print_date=model.time_print_date,
            print_update_stamp=model.print_update_stamp,
            created_at=model.created_at,
            updated_at=model.updated_at,
            line_items=tuple(LineItemDTO.from_model(li) for li in model.line_items),
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of an ordered listing."""

    data: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass(frozen=True)
class ReturnResult:
    """Outcome of a successful return: the new record and the updated item."""

    return_record: ReturnRecordDTO
    updated_item: LineItemDTO


@dataclass(frozen=True)
class ReasonStatistic:
    return_reason: ReturnReason
    count: int
    total_qty: int


@dataclass(frozen=True)
class QuantityStatistics:
    """
    Quantity totals over a set of line items.

    Percentages are of total_qty, rounded to two decimal places, and 0 when
    total_qty is 0.
    """

    item_count: int
    total_qty: int
    total_used: int
    total_returned: int
    total_pending: int
    used_percentage: Decimal
    returned_percentage: Decimal
    pending_percentage: Decimal
    by_status: dict[str, int] = field(default_factory=dict)
    by_return_reason: tuple[ReasonStatistic, ...] = ()


@dataclass(frozen=True)
class EpisodeStatistics:
    total_episodes: int
    by_billing_status: dict[str, int] = field(default_factory=dict)
    by_department: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageDetail:
    """One line item flattened with its episode, for drill-down views."""

    episode_id: UUID
    line_item_id: UUID
    patient_hn: str
    en: str | None
    patient_name: str
    department_code: str | None
    usage_datetime: datetime
    item_code: str
    item_description: str | None
    order_item_status: str | None
    qty: int
    qty_used_with_patient: int
    qty_returned_to_cabinet: int


@dataclass(frozen=True)
class ItemCodeValidation:
    item_code: str
    exists: bool
    item_name: str | None = None


@dataclass(frozen=True)
class ReturnableQuantity:
    """Units of one item code still out of the cabinet on a given day."""

    item_code: str
    item_name: str | None
    dispensed: int
    used: int
    returned: int

    @property
    def returnable(self) -> int:
        return self.dispensed - self.used - self.returned


@dataclass(frozen=True)
class OrderLine:
    """
    One ordered supply line on an incoming episode.

    ``from_mapping`` accepts both the order feed's keys (ItemCode, QTY, ...)
    and snake_case keys.  QTY may arrive as text.
    """

    item_code: str
    qty: int
    item_description: str | None = None
    assession_no: str | None = None
    order_item_status: str | None = None
    uom: str | None = None

    _FEED_KEYS: ClassVar[dict[str, str]] = {
        "ItemCode": "item_code",
        "ItemDescription": "item_description",
        "AssessionNo": "assession_no",
        "ItemStatus": "order_item_status",
        "QTY": "qty",
        "UOM": "uom",
    }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> OrderLine:
        values: dict[str, Any] = {}
        for key, value in data.items():
            values[cls._FEED_KEYS.get(key, key)] = value

        item_code = values.get("item_code")
        if not isinstance(item_code, str) or not item_code.strip():
            raise InvalidFieldError("item_code", item_code, "is required")

        return cls(
            item_code=item_code.strip(),
            qty=coerce_quantity(values.get("qty"), "qty", allow_zero=True),
            item_description=values.get("item_description"),
            assession_no=values.get("assession_no"),
            order_item_status=values.get("order_item_status"),
            uom=values.get("uom"),
        )
