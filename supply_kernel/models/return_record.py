"""
Module: supply_kernel.models.return_record
Responsibility: ORM persistence for units returned unused to a cabinet.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE; DELETE only when the owning line item is
      deleted in the same flush (ORM listener in db/immutability.py).
    - The sum of qty_returned over a line item's records equals the line
      item's qty_returned_to_cabinet (maintained by QuantityLifecycleService).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supply_kernel.db.base import Base, UUIDString
from supply_kernel.domain.quantities import ReturnReason


class ReturnRecord(Base):
    """One return event for one line item."""

    __tablename__ = "return_records"

    __table_args__ = (
        CheckConstraint("qty_returned > 0", name="ck_return_qty_positive"),
        Index("idx_return_line_item", "line_item_id"),
        Index("idx_return_datetime", "return_datetime"),
        Index("idx_return_reason", "return_reason"),
    )

    line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_items.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Denormalized for history queries
    item_code: Mapped[str] = mapped_column(String(50), nullable=False)

    qty_returned: Mapped[int] = mapped_column(BigInteger, nullable=False)

    return_reason: Mapped[ReturnReason] = mapped_column(String(30), nullable=False)

    return_by_user_id: Mapped[str] = mapped_column(String(100), nullable=False)

    return_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    return_datetime: Mapped[datetime] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    line_item: Mapped["LineItem"] = relationship(  # noqa: F821
        back_populates="return_records",
    )

    def __repr__(self) -> str:
        return (
            f"<ReturnRecord {self.id} {self.item_code} qty={self.qty_returned} "
            f"reason={self.return_reason}>"
        )
