"""Services for the supply kernel (write side)."""

from supply_kernel.services.audit_sink import (
    AuditRecord,
    AuditSink,
    LoggingAuditSink,
    NullAuditSink,
    QueuedAuditSink,
)
from supply_kernel.services.episode_service import EpisodeService
from supply_kernel.services.quantity_lifecycle_service import QuantityLifecycleService

__all__ = [
    "AuditRecord",
    "AuditSink",
    "EpisodeService",
    "LoggingAuditSink",
    "NullAuditSink",
    "QuantityLifecycleService",
    "QueuedAuditSink",
]
