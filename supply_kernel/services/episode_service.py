"""
EpisodeService -- intake and maintenance of usage episodes.

Responsibility:
    Creates episodes with their ordered line items, applies header updates
    (including wholesale replacement of line items), records print and
    billing information, and deletes episodes.

Architecture position:
    Kernel > Services -- imperative shell.  Flush only; the caller commits.

Invariants enforced:
    - New line items start PENDING with zero used and zero returned.
    - Line qty is a non-negative integer; textual integers are accepted.
    - A naive usage_datetime is wall-clock time in the canonical timezone
      and is stored as the matching UTC instant.
    - Replacing or deleting line items removes their return records with
      them, and nothing else may delete a return record.

Failure modes:
    - EpisodeNotFoundError: unknown episode id.
    - InvalidFieldError: missing patient_hn or unknown header field.
    - InvalidQuantityError: a line qty is negative or not an integer.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from supply_kernel.domain.clock import Clock
from supply_kernel.domain.dtos import EpisodeDTO, OrderLine
from supply_kernel.domain.quantities import ItemStatus
from supply_kernel.domain.time_window import DEFAULT_TIMEZONE, localize
from supply_kernel.exceptions import EpisodeNotFoundError, InvalidFieldError
from supply_kernel.logging_config import get_logger
from supply_kernel.models.usage_episode import LineItem, UsageEpisode
from supply_kernel.services.base import BaseService

logger = get_logger("services.episode")

# Header fields a caller may set on create or change on update
HEADER_FIELDS: tuple[str, ...] = (
    "hospital",
    "en",
    "patient_hn",
    "first_name",
    "last_name",
    "department_code",
    "usage_datetime",
    "usage_type",
    "purpose",
    "recorded_by_user_id",
    "billing_status",
    "billing_subtotal",
    "billing_tax",
    "billing_total",
    "billing_currency",
    "twu",
    "print_location",
    "print_date",
    "time_print_date",
    "print_update_stamp",
)

PRINT_FIELDS: tuple[str, ...] = (
    "twu",
    "print_location",
    "print_date",
    "time_print_date",
    "print_update_stamp",
)

_MONEY_FIELDS = ("billing_subtotal", "billing_tax", "billing_total")


def _normalize_orders(orders: Iterable[OrderLine | Mapping[str, Any]]) -> list[OrderLine]:
    return [
        order if isinstance(order, OrderLine) else OrderLine.from_mapping(order)
        for order in orders
    ]


def _normalize_header(
    fields: Mapping[str, Any], tz_name: str = DEFAULT_TIMEZONE,
) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(HEADER_FIELDS))
    if unknown:
        raise InvalidFieldError(unknown[0], fields[unknown[0]], "unknown episode field")

    values = dict(fields)
    for name in _MONEY_FIELDS:
        if name in values:
            raw = values[name]
            try:
                values[name] = Decimal(str(raw if raw is not None else 0))
            except InvalidOperation as exc:
                raise InvalidFieldError(name, raw, "must be a decimal amount") from exc

    usage_datetime = values.get("usage_datetime")
    if usage_datetime is not None and not isinstance(usage_datetime, datetime):
        if isinstance(usage_datetime, str):
            try:
                usage_datetime = datetime.fromisoformat(
                    usage_datetime.replace("Z", "+00:00")
                )
            except ValueError as exc:
                raise InvalidFieldError(
                    "usage_datetime", usage_datetime, "must be an ISO datetime"
                ) from exc
        else:
            raise InvalidFieldError(
                "usage_datetime", usage_datetime, "must be an ISO datetime"
            )
    if isinstance(usage_datetime, datetime):
        # naive values are wall-clock time in the canonical timezone
        values["usage_datetime"] = localize(usage_datetime, tz_name)

    if "patient_hn" in values:
        hn = values["patient_hn"]
        if not isinstance(hn, str) or not hn.strip():
            raise InvalidFieldError("patient_hn", hn, "is required")
    return values


class EpisodeService(BaseService[UsageEpisode]):
    """Creates, updates and deletes usage episodes."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        timezone_name: str = DEFAULT_TIMEZONE,
    ):
        super().__init__(session, clock)
        self._tz_name = timezone_name

    def create_episode(
        self,
        patient_hn: str,
        orders: Iterable[OrderLine | Mapping[str, Any]],
        **header: Any,
    ) -> EpisodeDTO:
        """
        Create an episode with one line item per order line.

        ``usage_datetime`` defaults to the clock's now; ``billing_currency``
        defaults to THB.
        """
        values = _normalize_header({"patient_hn": patient_hn, **header}, self._tz_name)
        lines = _normalize_orders(orders)
        now = self._clock.now()

        values.setdefault("usage_datetime", now)
        if values.get("billing_currency") is None:
            values["billing_currency"] = "THB"
        for name in _MONEY_FIELDS:
            values.setdefault(name, Decimal("0"))

        episode = UsageEpisode(**values, created_at=now, updated_at=now)
        episode.line_items = self._build_lines(lines, now)
        self.session.add(episode)
        self.session.flush()

        logger.info(
            "usage_episode_created",
            extra={
                "episode_id": str(episode.id),
                "patient_hn": episode.patient_hn,
                "en": episode.en,
                "line_count": len(lines),
            },
        )
        return EpisodeDTO.from_model(episode)

    def update_episode(
        self,
        episode_id: UUID,
        orders: Iterable[OrderLine | Mapping[str, Any]] | None = None,
        **changes: Any,
    ) -> EpisodeDTO:
        """
        Apply header changes; when ``orders`` is given, replace every line item.

        Replaced line items are deleted together with their return records.
        """
        episode = self._get(episode_id)
        values = _normalize_header(changes, self._tz_name)
        now = self._clock.now()

        for name, value in values.items():
            setattr(episode, name, value)

        replaced = 0
        if orders is not None:
            lines = _normalize_orders(orders)
            for old in list(episode.line_items):
                self.session.delete(old)
                replaced += 1
            self.session.flush()
            # deleted rows stay in the loaded collection until it is reloaded
            self.session.expire(episode, ["line_items"])
            episode.line_items = self._build_lines(lines, now)

        episode.updated_at = now
        self.session.flush()

        logger.info(
            "usage_episode_updated",
            extra={
                "episode_id": str(episode.id),
                "fields": sorted(values),
                "lines_replaced": replaced,
            },
        )
        return EpisodeDTO.from_model(episode)

    def update_print_info(self, episode_id: UUID, **print_info: Any) -> EpisodeDTO:
        unknown = sorted(set(print_info) - set(PRINT_FIELDS))
        if unknown:
            raise InvalidFieldError(unknown[0], print_info[unknown[0]], "not a print field")

        episode = self._get(episode_id)
        for name, value in print_info.items():
            setattr(episode, name, value)
        episode.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "usage_episode_print_info_updated",
            extra={"episode_id": str(episode.id), "fields": sorted(print_info)},
        )
        return EpisodeDTO.from_model(episode)

    def update_billing_status(
        self,
        episode_id: UUID,
        billing_status: str,
        **amounts: Any,
    ) -> EpisodeDTO:
        """Set the billing status, and optionally the billing amounts and currency."""
        if not isinstance(billing_status, str) or not billing_status.strip():
            raise InvalidFieldError("billing_status", billing_status, "is required")
        unknown = sorted(set(amounts) - {*_MONEY_FIELDS, "billing_currency"})
        if unknown:
            raise InvalidFieldError(unknown[0], amounts[unknown[0]], "not a billing field")

        values = _normalize_header(
            {"billing_status": billing_status.strip(), **amounts}, self._tz_name,
        )
        episode = self._get(episode_id)
        previous = episode.billing_status
        for name, value in values.items():
            setattr(episode, name, value)
        episode.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "usage_episode_billing_updated",
            extra={
                "episode_id": str(episode.id),
                "from_status": previous,
                "to_status": episode.billing_status,
            },
        )
        return EpisodeDTO.from_model(episode)

    def delete_episode(self, episode_id: UUID) -> None:
        episode = self._get(episode_id)
        line_count = len(episode.line_items)
        self.session.delete(episode)
        self.session.flush()

        logger.info(
            "usage_episode_deleted",
            extra={"episode_id": str(episode_id), "line_count": line_count},
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _get(self, episode_id: UUID) -> UsageEpisode:
        episode = self.session.get(UsageEpisode, episode_id)
        if episode is None:
            raise EpisodeNotFoundError(str(episode_id))
        return episode

    @staticmethod
    def _build_lines(lines: list[OrderLine], now: datetime) -> list[LineItem]:
        return [
            LineItem(
                line_no=position,
                item_code=line.item_code,
                item_description=line.item_description,
                assession_no=line.assession_no,
                order_item_status=line.order_item_status,
                uom=line.uom,
                qty=line.qty,
                qty_used_with_patient=0,
                qty_returned_to_cabinet=0,
                item_status=ItemStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            for position, line in enumerate(lines, start=1)
        ]
