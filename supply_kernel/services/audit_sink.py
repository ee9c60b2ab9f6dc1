"""
Audit sinks -- best-effort recording of command outcomes.

Responsibility:
    Accepts one AuditRecord per command and gets it to durable storage (or a
    log) without ever affecting the command that produced it.

Architecture position:
    Kernel > Services.  QueuedAuditSink runs its own background thread with
    its own sessions, independent of the caller's transaction, so an audit
    row survives a rolled-back command (failures are audited too).

Invariants enforced:
    - ``emit()`` never raises and never blocks the caller.
    - A writer failure is logged and dropped; it is never re-raised.
    - Queue overflow drops the record with a warning log.
"""

from __future__ import annotations

import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from supply_kernel.logging_config import get_logger
from supply_kernel.models.audit_entry import SupplyAuditEntry

logger = get_logger("services.audit_sink")


def _jsonable(value: Any) -> Any:
    """Reduce parameter values to JSON-storable primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return repr(value)


@dataclass(frozen=True)
class AuditRecord:
    """One command outcome to be audited."""

    operation: str
    success: bool
    occurred_at: datetime
    actor_id: str | None = None
    subject_id: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    def to_model(self) -> SupplyAuditEntry:
        return SupplyAuditEntry(
            operation=self.operation,
            success=self.success,
            actor_id=self.actor_id,
            subject_id=self.subject_id,
            parameters=_jsonable(self.parameters),
            error_code=self.error_code,
            error_message=self.error_message,
            occurred_at=self.occurred_at,
        )


class AuditSink(ABC):
    """Destination for audit records."""

    @abstractmethod
    def emit(self, record: AuditRecord) -> None:
        """Hand over a record.  Must not raise and must not block."""
        ...

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until everything emitted so far is written.  True on success."""
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Release resources.  Further records are dropped."""


class NullAuditSink(AuditSink):
    """Discards every record."""

    def emit(self, record: AuditRecord) -> None:
        return None


class LoggingAuditSink(AuditSink):
    """Writes each record as a structured log line, nothing else."""

    def emit(self, record: AuditRecord) -> None:
        try:
            logger.info(
                "supply_audit",
                extra={
                    "audit_operation": record.operation,
                    "success": record.success,
                    "audit_actor_id": record.actor_id,
                    "subject_id": record.subject_id,
                    "parameters": _jsonable(record.parameters),
                    "error_code": record.error_code,
                    "error_message": record.error_message,
                },
            )
        except Exception:
            # Audit must never surface into the command path
            logger.debug("audit_log_emit_failed", exc_info=True)


class QueuedAuditSink(AuditSink):
    """
    Bounded queue drained by a daemon thread that inserts SupplyAuditEntry rows.

    Contract:
        - ``emit()`` enqueues without waiting; a full queue drops the record.
        - Each record is written in its own short transaction.
        - ``flush()`` waits for the queue to drain (tests, shutdown).
        - ``close()`` stops the worker after draining what it can.
    """

    _STOP = object()

    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_queue_size: int = 1000,
        start: bool = True,
    ):
        self._session_factory = session_factory
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None
        self.dropped = 0
        self.failed = 0
        if start:
            self.start()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._closed.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="supply-audit-writer",
            daemon=True,
        )
        self._thread.start()
        logger.info("audit_sink_started", extra={"max_queue_size": self._queue.maxsize})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def emit(self, record: AuditRecord) -> None:
        if self._closed.is_set():
            self.dropped += 1
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "audit_entry_dropped",
                extra={"audit_operation": record.operation, "reason": "queue_full"},
            )

    def flush(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._thread is not None and self._thread.is_alive():
            try:
                self._queue.put(self._STOP, timeout=timeout)
            except queue.Full:
                logger.warning("audit_sink_stop_signal_dropped")
            self._thread.join(timeout=timeout)
        logger.info(
            "audit_sink_stopped",
            extra={"dropped": self.dropped, "failed": self.failed},
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def _write(self, record: AuditRecord) -> None:
        try:
            with self._session_factory() as session:
                session.add(record.to_model())
                session.commit()
        except Exception:
            self.failed += 1
            logger.exception(
                "audit_write_failed",
                extra={"audit_operation": record.operation},
            )
