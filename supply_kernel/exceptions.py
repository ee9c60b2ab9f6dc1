"""
Typed Exception Hierarchy for the Supply Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (gateway, report generators, ward terminals) must render precise
messages for nurses and auditors.  Parsing message strings is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - RIGHT way:
    try:
        commands.record_usage(item_id=item_id, qty_used=3, recorded_by_user_id=uid)
    except QuantityExceededError as e:
        show(f"Only {e.remaining} left on this line")      # Structured data
        respond(code=e.code, approved=e.approved_qty)       # Machine-readable

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SupplyKernelError (base)
    |
    +-- NotFoundError
    |   +-- LineItemNotFoundError
    |   +-- EpisodeNotFoundError
    |
    +-- SupplyValidationError
    |   +-- InvalidQuantityError
    |   +-- QuantityExceededError
    |   +-- InvalidReturnReasonError
    |   +-- InvalidItemStatusError
    |   +-- InvalidPaginationError
    |   +-- InvalidDateRangeError
    |   +-- InvalidFieldError
    |
    +-- UpstreamUnavailableError
    +-- ItemLookupError
    |
    +-- ReconciliationError
    |   +-- ComparisonTooLargeError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InternalError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                     | When Raised
----------------|--------------------------|------------------------------------
Not found       | LINE_ITEM_NOT_FOUND      | Line item ID doesn't exist
                | EPISODE_NOT_FOUND        | Usage episode ID doesn't exist
----------------|--------------------------|------------------------------------
Validation      | INVALID_QUANTITY         | Quantity argument <= 0 / not integer
                | QUANTITY_EXCEEDED        | used + returned would exceed qty
                | INVALID_RETURN_REASON    | Reason not in the enumeration
                | INVALID_ITEM_STATUS      | Status filter not recognised
                | INVALID_PAGINATION       | page < 1 or limit out of range
                | INVALID_DATE_RANGE       | date_from after date_to
                | INVALID_FIELD            | Missing or unknown episode field
----------------|--------------------------|------------------------------------
Upstream        | UPSTREAM_UNAVAILABLE     | Dispensing feed / catalog failed
                | ITEM_LOOKUP_FAILED       | One item code could not be looked up
----------------|--------------------------|------------------------------------
Reconciliation  | COMPARISON_TOO_LARGE     | Item-code cardinality over the cap
----------------|--------------------------|------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT | Line item changed underneath us
----------------|--------------------------|------------------------------------
Immutability    | IMMUTABILITY_VIOLATION   | Return record / audit row modified,
                |                          | or item_status written by hand
----------------|--------------------------|------------------------------------
Internal        | INTERNAL_ERROR           | Storage / transaction failure

===============================================================================
"""


class SupplyKernelError(Exception):
    """
    Base exception for all supply kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SUPPLY_KERNEL_ERROR"


# Not-found exceptions


class NotFoundError(SupplyKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class LineItemNotFoundError(NotFoundError):
    """Line item with given ID was not found."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Supply line item not found: {line_item_id}")


class EpisodeNotFoundError(NotFoundError):
    """Usage episode with given ID was not found."""

    code: str = "EPISODE_NOT_FOUND"

    def __init__(self, episode_id: str):
        self.episode_id = episode_id
        super().__init__(f"Medical supply usage not found: {episode_id}")


# Validation exceptions


class SupplyValidationError(SupplyKernelError):
    """Base exception for caller input that fails validation."""

    code: str = "VALIDATION_ERROR"


class InvalidFieldError(SupplyValidationError):
    """Episode field is missing, unknown, or has an unusable value."""

    code: str = "INVALID_FIELD"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class InvalidQuantityError(SupplyValidationError):
    """Quantity argument is not a positive integer."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: object, reason: str = "must be greater than 0"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class QuantityExceededError(SupplyValidationError):
    """
    Recording the quantity would push used + returned above the approved qty.

    Carries every figure a caller needs to explain the rejection.
    """

    code: str = "QUANTITY_EXCEEDED"

    def __init__(
        self,
        line_item_id: str,
        approved_qty: int,
        used_qty: int,
        returned_qty: int,
        attempted_qty: int,
    ):
        self.line_item_id = line_item_id
        self.approved_qty = approved_qty
        self.used_qty = used_qty
        self.returned_qty = returned_qty
        self.attempted_qty = attempted_qty
        self.total_qty = used_qty + returned_qty + attempted_qty
        self.remaining = max(approved_qty - used_qty - returned_qty, 0)
        super().__init__(
            f"Quantity exceeded for line item {line_item_id}: "
            f"approved={approved_qty}, used={used_qty}, returned={returned_qty}, "
            f"attempted={attempted_qty}, total={self.total_qty}"
        )


class InvalidReturnReasonError(SupplyValidationError):
    """Return reason is not one of the enumerated reasons."""

    code: str = "INVALID_RETURN_REASON"

    def __init__(self, reason: object, allowed: tuple[str, ...]):
        self.reason = reason
        self.allowed = allowed
        super().__init__(
            f"Invalid return reason {reason!r}; expected one of {', '.join(allowed)}"
        )


class InvalidItemStatusError(SupplyValidationError):
    """Item status filter is not a known status."""

    code: str = "INVALID_ITEM_STATUS"

    def __init__(self, status: object, allowed: tuple[str, ...]):
        self.status = status
        self.allowed = allowed
        super().__init__(
            f"Invalid item status {status!r}; expected one of {', '.join(allowed)}"
        )


class InvalidPaginationError(SupplyValidationError):
    """Page or limit outside the accepted range."""

    code: str = "INVALID_PAGINATION"

    def __init__(self, page: object, limit: object, max_limit: int):
        self.page = page
        self.limit = limit
        self.max_limit = max_limit
        super().__init__(
            f"Invalid pagination page={page!r}, limit={limit!r} "
            f"(page >= 1, 1 <= limit <= {max_limit})"
        )


class InvalidDateRangeError(SupplyValidationError):
    """Date window bound cannot be parsed, or its start is after its end."""

    code: str = "INVALID_DATE_RANGE"

    def __init__(self, date_from: object, date_to: object, reason: str | None = None):
        self.date_from = date_from
        self.date_to = date_to
        self.reason = reason or f"{date_from} is after {date_to}"
        super().__init__(f"Invalid date range: {self.reason}")


# Upstream collaborators


class UpstreamUnavailableError(SupplyKernelError):
    """
    An external read-only collaborator could not be reached.

    Raised when the cabinet dispensing feed or the item catalog fails as a
    whole during reconciliation.
    """

    code: str = "UPSTREAM_UNAVAILABLE"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Upstream source '{source}' unavailable: {reason}")


class ItemLookupError(SupplyKernelError):
    """The catalog is reachable but the lookup of one item code failed."""

    code: str = "ITEM_LOOKUP_FAILED"

    def __init__(self, item_code: str, reason: str):
        self.item_code = item_code
        self.reason = reason
        super().__init__(f"Lookup of item code '{item_code}' failed: {reason}")


# Reconciliation exceptions


class ReconciliationError(SupplyKernelError):
    """Base exception for reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class ComparisonTooLargeError(ReconciliationError):
    """Number of item codes in a comparison exceeds the configured cap."""

    code: str = "COMPARISON_TOO_LARGE"

    def __init__(self, item_code_count: int, max_item_codes: int):
        self.item_code_count = item_code_count
        self.max_item_codes = max_item_codes
        super().__init__(
            f"Comparison spans {item_code_count} item codes "
            f"(maximum {max_item_codes}); narrow the filters"
        )


# Concurrency exceptions


class ConcurrencyError(SupplyKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability exceptions


class ImmutabilityError(SupplyKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record, or to write a
    derived field out of step with its inputs.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Storage exceptions


class InternalError(SupplyKernelError):
    """Storage or transaction failure; the operation was rolled back."""

    code: str = "INTERNAL_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Internal error during {operation}: {reason}")
