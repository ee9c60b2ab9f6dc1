"""
supply_services.supply_command_service -- Command facade for the supply platform.

Responsibility:
    The single entry point callers use.  Each command validates its inputs
    (ids, pagination, enumerations), opens one transaction, runs the
    kernel service / selector / reconciliation service inside it, and emits
    one audit record for the outcome.

Architecture position:
    Services -- owns the transaction boundary.  Kernel services only flush;
    this facade commits on success and rolls back on any failure.

Invariants enforced:
    - One command, one transaction: a usage or return is all-or-nothing.
    - Every command, success or failure, emits exactly one AuditRecord.
    - Audit emission can never change a command's result or exception.
    - Storage failures (SQLAlchemyError) surface as InternalError; a lost
      version race surfaces as OptimisticLockError.  No automatic retry.

Failure modes:
    - SupplyValidationError subclasses: bad input, re-raised unchanged.
    - NotFoundError subclasses: unknown or malformed ids.
    - UpstreamUnavailableError / ComparisonTooLargeError: reconciliation.
    - OptimisticLockError: concurrent modification of the same line item.
    - InternalError: any other storage failure; wraps the original.

Usage:
    commands = SupplyCommandService(session_factory, event_source, catalog)
    item = commands.record_usage(
        item_id=line_item_id, qty_used=2, recorded_by_user_id="nurse-7",
    )
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from supply_config.schema import DatabaseSettings, SupplySettings
from supply_engines.reconciliation import ComparisonResult
from supply_kernel.db.engine import session_scope
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.domain.dtos import (
    EpisodeDTO,
    EpisodeStatistics,
    ItemCodeValidation,
    LineItemDTO,
    OrderLine,
    Page,
    QuantityStatistics,
    ReturnableQuantity,
    ReturnRecordDTO,
    ReturnResult,
    UsageDetail,
)
from supply_kernel.domain.quantities import parse_item_status, parse_return_reason
from supply_kernel.domain.time_window import resolve_window
from supply_kernel.exceptions import (
    EpisodeNotFoundError,
    InternalError,
    InvalidPaginationError,
    LineItemNotFoundError,
    NotFoundError,
    OptimisticLockError,
    SupplyKernelError,
)
from supply_kernel.logging_config import LogContext, get_logger
from supply_kernel.selectors.episode_selector import EpisodeSelector
from supply_kernel.selectors.line_item_selector import LineItemSelector
from supply_kernel.services.audit_sink import AuditRecord, AuditSink, LoggingAuditSink
from supply_kernel.services.episode_service import EpisodeService
from supply_kernel.services.quantity_lifecycle_service import QuantityLifecycleService
from supply_services.reconciliation_service import DispensedItems, ReconciliationService
from supply_services.sources import DispensedEventSource, ItemCatalog

logger = get_logger("services.commands")

T = TypeVar("T")

_DEFAULT_SETTINGS = SupplySettings(
    settings_id="default", version=1, database=DatabaseSettings(),
)


def _coerce_id(value: object, not_found: type[NotFoundError]) -> UUID:
    """A malformed id cannot name an existing row, so it is a not-found."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise not_found(str(value)) from None


def _as_int(value: object) -> object:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


class SupplyCommandService:
    """
    Command facade over the quantity lifecycle, episode intake and
    reconciliation.

    Contract:
        Callers supply a session factory, the dispensing feed and the item
        catalog.  Every public method owns its own transaction and returns
        frozen DTOs built inside it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        event_source: DispensedEventSource,
        catalog: ItemCatalog,
        *,
        settings: SupplySettings | None = None,
        audit_sink: AuditSink | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._event_source = event_source
        self._catalog = catalog
        self._settings = settings or _DEFAULT_SETTINGS
        self._audit_sink = audit_sink or LoggingAuditSink()
        self._clock = clock or SystemClock()

    @property
    def settings(self) -> SupplySettings:
        return self._settings

    @property
    def audit_sink(self) -> AuditSink:
        return self._audit_sink

    # =========================================================================
    # Quantity lifecycle
    # =========================================================================

    def record_usage(
        self,
        *,
        item_id: UUID | str,
        qty_used: object,
        recorded_by_user_id: str,
    ) -> LineItemDTO:
        parameters = {"item_id": item_id, "qty_used": qty_used}

        def work(session: Session) -> LineItemDTO:
            line_item_id = _coerce_id(item_id, LineItemNotFoundError)
            return self._lifecycle(session).record_usage(
                line_item_id, qty_used, recorded_by_user_id,
            )

        return self._execute(
            "record_usage", work,
            actor_id=recorded_by_user_id, subject_id=item_id, parameters=parameters,
        )

    def record_return(
        self,
        *,
        item_id: UUID | str,
        qty_returned: object,
        return_reason: object,
        return_by_user_id: str,
        return_note: str | None = None,
    ) -> ReturnResult:
        parameters = {
            "item_id": item_id,
            "qty_returned": qty_returned,
            "return_reason": return_reason,
            "return_note": return_note,
        }

        def work(session: Session) -> ReturnResult:
            line_item_id = _coerce_id(item_id, LineItemNotFoundError)
            return self._lifecycle(session).record_return(
                line_item_id, qty_returned, return_reason, return_by_user_id,
                note=return_note,
            )

        return self._execute(
            "record_return", work,
            actor_id=return_by_user_id, subject_id=item_id, parameters=parameters,
        )

    def get_pending_items(
        self,
        *,
        department_code: str | None = None,
        patient_hn: str | None = None,
        item_status: object = None,
        page: object = None,
        limit: object = None,
    ) -> Page[LineItemDTO]:
        parameters = {
            "department_code": department_code,
            "patient_hn": patient_hn,
            "item_status": item_status,
            "page": page,
            "limit": limit,
        }

        def work(session: Session) -> Page[LineItemDTO]:
            page_no, page_limit = self._pagination(page, limit)
            status = parse_item_status(item_status) if item_status else None
            return LineItemSelector(session).pending_items(
                department_code=department_code,
                patient_hn=patient_hn,
                item_status=status,
                page=page_no,
                limit=page_limit,
            )

        return self._execute("get_pending_items", work, parameters=parameters)

    def get_return_history(
        self,
        *,
        department_code: str | None = None,
        patient_hn: str | None = None,
        return_reason: object = None,
        date_from: date | datetime | str | None = None,
        date_to: date | datetime | str | None = None,
        page: object = None,
        limit: object = None,
    ) -> Page[ReturnRecordDTO]:
        parameters = {
            "department_code": department_code,
            "patient_hn": patient_hn,
            "return_reason": return_reason,
            "date_from": date_from,
            "date_to": date_to,
            "page": page,
            "limit": limit,
        }

        def work(session: Session) -> Page[ReturnRecordDTO]:
            page_no, page_limit = self._pagination(page, limit)
            reason = parse_return_reason(return_reason) if return_reason else None
            window = resolve_window(date_from, date_to, self._settings.timezone)
            return LineItemSelector(session).return_history(
                department_code=department_code,
                patient_hn=patient_hn,
                return_reason=reason,
                window=window,
                page=page_no,
                limit=page_limit,
            )

        return self._execute("get_return_history", work, parameters=parameters)

    def get_quantity_statistics(
        self, *, department_code: str | None = None
    ) -> QuantityStatistics:
        return self._execute(
            "get_quantity_statistics",
            lambda session: LineItemSelector(session).quantity_statistics(
                department_code=department_code,
            ),
            parameters={"department_code": department_code},
        )

    def get_line_item(self, *, item_id: UUID | str) -> LineItemDTO:
        return self._execute(
            "get_line_item",
            lambda session: LineItemSelector(session).get(
                _coerce_id(item_id, LineItemNotFoundError)
            ),
            subject_id=item_id,
            parameters={"item_id": item_id},
        )

    def get_line_items_by_episode(self, *, episode_id: UUID | str) -> list[LineItemDTO]:
        return self._execute(
            "get_line_items_by_episode",
            lambda session: LineItemSelector(session).get_by_episode(
                _coerce_id(episode_id, EpisodeNotFoundError)
            ),
            subject_id=episode_id,
            parameters={"episode_id": episode_id},
        )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def compare_dispensed_vs_usage(
        self,
        *,
        item_code: str | None = None,
        item_type_id: int | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
        department_code: str | None = None,
        page: object = None,
        limit: object = None,
    ) -> ComparisonResult:
        parameters = {
            "item_code": item_code,
            "item_type_id": item_type_id,
            "start_date": start_date,
            "end_date": end_date,
            "department_code": department_code,
            "page": page,
            "limit": limit,
        }

        def work(session: Session) -> ComparisonResult:
            page_no, page_limit = self._pagination(page, limit)
            return self._reconciliation(session).compare(
                item_code=item_code,
                item_type_id=item_type_id,
                start_date=start_date,
                end_date=end_date,
                department_code=department_code,
                page=page_no,
                limit=page_limit,
            )

        return self._execute("compare_dispensed_vs_usage", work, parameters=parameters)

    def get_dispensed_items(
        self,
        *,
        item_code: str | None = None,
        item_type_id: int | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
    ) -> DispensedItems:
        return self._execute(
            "get_dispensed_items",
            lambda session: self._reconciliation(session).get_dispensed_items(
                item_code=item_code,
                item_type_id=item_type_id,
                start_date=start_date,
                end_date=end_date,
            ),
            parameters={
                "item_code": item_code,
                "item_type_id": item_type_id,
                "start_date": start_date,
                "end_date": end_date,
            },
        )

    def get_usage_by_item_code(
        self,
        *,
        item_code: str | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
        department_code: str | None = None,
    ) -> list[UsageDetail]:
        return self._execute(
            "get_usage_by_item_code",
            lambda session: self._reconciliation(session).get_usage_by_item_code(
                item_code=item_code,
                start_date=start_date,
                end_date=end_date,
                department_code=department_code,
            ),
            parameters={
                "item_code": item_code,
                "start_date": start_date,
                "end_date": end_date,
                "department_code": department_code,
            },
        )

    def get_returnable_quantities(
        self, *, on_date: date | str | None = None
    ) -> list[ReturnableQuantity]:
        return self._execute(
            "get_returnable_quantities",
            lambda session: self._reconciliation(session).get_returnable_quantities(on_date),
            parameters={"on_date": on_date},
        )

    def validate_item_codes(self, *, item_codes: Iterable[str]) -> list[ItemCodeValidation]:
        codes = list(item_codes)
        return self._execute(
            "validate_item_codes",
            lambda session: self._reconciliation(session).validate_item_codes(codes),
            parameters={"item_codes": codes},
        )

    # =========================================================================
    # Episode intake
    # =========================================================================

    def create_episode(
        self,
        *,
        patient_hn: str,
        orders: Iterable[OrderLine | Mapping[str, Any]],
        recorded_by_user_id: str | None = None,
        **header: Any,
    ) -> EpisodeDTO:
        orders = list(orders)
        parameters = {"patient_hn": patient_hn, "order_count": len(orders), **header}

        def work(session: Session) -> EpisodeDTO:
            return self._episodes(session).create_episode(
                patient_hn, orders, recorded_by_user_id=recorded_by_user_id, **header,
            )

        return self._execute(
            "create_episode", work, actor_id=recorded_by_user_id, parameters=parameters,
        )

    def update_episode(
        self,
        *,
        episode_id: UUID | str,
        orders: Iterable[OrderLine | Mapping[str, Any]] | None = None,
        **changes: Any,
    ) -> EpisodeDTO:
        orders = list(orders) if orders is not None else None
        parameters = {
            "episode_id": episode_id,
            "order_count": len(orders) if orders is not None else None,
            **changes,
        }

        def work(session: Session) -> EpisodeDTO:
            return self._episodes(session).update_episode(
                _coerce_id(episode_id, EpisodeNotFoundError), orders, **changes,
            )

        return self._execute(
            "update_episode", work, subject_id=episode_id, parameters=parameters,
        )

    def update_print_info(self, *, episode_id: UUID | str, **print_info: Any) -> EpisodeDTO:
        return self._execute(
            "update_print_info",
            lambda session: self._episodes(session).update_print_info(
                _coerce_id(episode_id, EpisodeNotFoundError), **print_info,
            ),
            subject_id=episode_id,
            parameters={"episode_id": episode_id, **print_info},
        )

    def update_billing_status(
        self,
        *,
        episode_id: UUID | str,
        billing_status: str,
        **amounts: Any,
    ) -> EpisodeDTO:
        return self._execute(
            "update_billing_status",
            lambda session: self._episodes(session).update_billing_status(
                _coerce_id(episode_id, EpisodeNotFoundError), billing_status, **amounts,
            ),
            subject_id=episode_id,
            parameters={"episode_id": episode_id, "billing_status": billing_status, **amounts},
        )

    def delete_episode(self, *, episode_id: UUID | str) -> None:
        self._execute(
            "delete_episode",
            lambda session: self._episodes(session).delete_episode(
                _coerce_id(episode_id, EpisodeNotFoundError)
            ),
            subject_id=episode_id,
            parameters={"episode_id": episode_id},
        )

    def get_episode(self, *, episode_id: UUID | str) -> EpisodeDTO:
        return self._execute(
            "get_episode",
            lambda session: EpisodeSelector(session).get(
                _coerce_id(episode_id, EpisodeNotFoundError)
            ),
            subject_id=episode_id,
            parameters={"episode_id": episode_id},
        )

    def list_episodes(
        self,
        *,
        patient_hn: str | None = None,
        en: str | None = None,
        department_code: str | None = None,
        billing_status: str | None = None,
        usage_type: str | None = None,
        date_from: date | datetime | str | None = None,
        date_to: date | datetime | str | None = None,
        page: object = None,
        limit: object = None,
    ) -> Page[EpisodeDTO]:
        parameters = {
            "patient_hn": patient_hn,
            "en": en,
            "department_code": department_code,
            "billing_status": billing_status,
            "usage_type": usage_type,
            "date_from": date_from,
            "date_to": date_to,
            "page": page,
            "limit": limit,
        }

        def work(session: Session) -> Page[EpisodeDTO]:
            page_no, page_limit = self._pagination(page, limit)
            window = resolve_window(date_from, date_to, self._settings.timezone)
            return EpisodeSelector(session).list_episodes(
                patient_hn=patient_hn,
                en=en,
                department_code=department_code,
                billing_status=billing_status,
                usage_type=usage_type,
                window=window,
                page=page_no,
                limit=page_limit,
            )

        return self._execute("list_episodes", work, parameters=parameters)

    def find_by_patient_hn(self, *, patient_hn: str) -> list[EpisodeDTO]:
        return self._execute(
            "find_by_patient_hn",
            lambda session: EpisodeSelector(session).find_by_patient_hn(patient_hn),
            parameters={"patient_hn": patient_hn},
        )

    def find_by_department(self, *, department_code: str) -> list[EpisodeDTO]:
        return self._execute(
            "find_by_department",
            lambda session: EpisodeSelector(session).find_by_department(department_code),
            parameters={"department_code": department_code},
        )

    def get_episode_statistics(self) -> EpisodeStatistics:
        return self._execute(
            "get_episode_statistics",
            lambda session: EpisodeSelector(session).statistics(),
        )

    # =========================================================================
    # Internal
    # =========================================================================

    def _lifecycle(self, session: Session) -> QuantityLifecycleService:
        return QuantityLifecycleService(session, self._clock)

    def _episodes(self, session: Session) -> EpisodeService:
        return EpisodeService(
            session, self._clock, timezone_name=self._settings.timezone,
        )

    def _reconciliation(self, session: Session) -> ReconciliationService:
        return ReconciliationService(
            session,
            self._event_source,
            self._catalog,
            timezone_name=self._settings.timezone,
            max_item_codes=self._settings.max_comparison_item_codes,
            clock=self._clock,
        )

    def _pagination(self, page: object, limit: object) -> tuple[int, int]:
        page = 1 if page is None else _as_int(page)
        limit = self._settings.default_page_limit if limit is None else _as_int(limit)
        max_limit = self._settings.max_page_limit
        valid = (
            isinstance(page, int) and not isinstance(page, bool) and page >= 1
            and isinstance(limit, int) and not isinstance(limit, bool)
            and 1 <= limit <= max_limit
        )
        if not valid:
            raise InvalidPaginationError(page, limit, max_limit)
        return page, limit

    def _execute(
        self,
        operation: str,
        work: Callable[[Session], T],
        *,
        actor_id: str | None = None,
        subject_id: object = None,
        parameters: dict[str, Any] | None = None,
    ) -> T:
        """Run ``work`` in one transaction and audit the outcome."""
        subject = str(subject_id) if subject_id is not None else None
        with LogContext.bind(
            correlation_id=str(uuid4()), operation=operation, actor_id=actor_id,
        ):
            try:
                with session_scope(self._session_factory) as session:
                    result = work(session)
            except SupplyKernelError as exc:
                logger.warning(
                    "supply_command_rejected",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                self._audit(operation, actor_id, subject, parameters, exc)
                raise
            except StaleDataError as exc:
                error = OptimisticLockError("LineItem", subject or "unknown")
                logger.warning("supply_command_conflict", extra={"error": str(exc)})
                self._audit(operation, actor_id, subject, parameters, error)
                raise error from exc
            except SQLAlchemyError as exc:
                error = InternalError(operation, str(exc))
                logger.exception("supply_command_storage_failed")
                self._audit(operation, actor_id, subject, parameters, error)
                raise error from exc
            except Exception as exc:
                error = InternalError(operation, str(exc))
                logger.exception("supply_command_failed")
                self._audit(operation, actor_id, subject, parameters, error)
                raise

            self._audit(operation, actor_id, subject, parameters, None)
            return result

    def _audit(
        self,
        operation: str,
        actor_id: str | None,
        subject_id: str | None,
        parameters: dict[str, Any] | None,
        error: SupplyKernelError | None,
    ) -> None:
        try:
            self._audit_sink.emit(
                AuditRecord(
                    operation=operation,
                    success=error is None,
                    occurred_at=self._clock.now(),
                    actor_id=actor_id,
                    subject_id=subject_id,
                    parameters=dict(parameters or {}),
                    error_code=error.code if error is not None else None,
                    error_message=str(error) if error is not None else None,
                )
            )
        except Exception:
            # Sinks must not raise; a faulty one must not change the outcome
            logger.exception("audit_emit_failed", extra={"audit_operation": operation})
