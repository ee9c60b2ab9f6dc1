"""ORM models for the supply kernel."""

from supply_kernel.models.audit_entry import SupplyAuditEntry
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem, UsageEpisode

__all__ = [
    "LineItem",
    "ReturnRecord",
    "SupplyAuditEntry",
    "UsageEpisode",
]
