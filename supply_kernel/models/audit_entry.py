"""
Module: supply_kernel.models.audit_entry
Responsibility: ORM persistence for the command audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listener in db/immutability.py).

Audit relevance:
    One row per command handled by SupplyCommandService, written
    asynchronously by QueuedAuditSink.  Rows record failures as well as
    successes, with the error code and message of the failure.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from supply_kernel.db.base import Base


class SupplyAuditEntry(Base):
    """One audited command invocation."""

    __tablename__ = "supply_audit_entries"

    __table_args__ = (
        Index("idx_supply_audit_operation", "operation"),
        Index("idx_supply_audit_subject", "subject_id"),
        Index("idx_supply_audit_occurred", "occurred_at"),
    )

    operation: Mapped[str] = mapped_column(String(100), nullable=False)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)

    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Line item or episode the command acted on, when known
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        status = "ok" if self.success else f"failed:{self.error_code}"
        return f"<SupplyAuditEntry {self.operation} {status}>"
