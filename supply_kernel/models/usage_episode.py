"""
Module: supply_kernel.models.usage_episode
Responsibility: ORM persistence for usage episodes (one clinical event on one
    patient) and the dispensed line items they own.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/quantities.py (vocabulary only).

Invariants enforced:
    Q1 -- qty_used_with_patient + qty_returned_to_cabinet <= qty, all >= 0
          (CHECK constraints + ORM listener).
    Q2 -- item_status always equals derive_status(qty, used, returned)
          (ORM listener in db/immutability.py).
    Every UPDATE of a LineItem compares and bumps ``version``; a lost race
    surfaces as StaleDataError, translated to OptimisticLockError.

Failure modes:
    - ImmutabilityViolationError when a flush would persist an inconsistent
      line item.
    - StaleDataError when the version check fails on UPDATE.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supply_kernel.db.base import TrackedBase, UUIDString
from supply_kernel.domain.quantities import ItemStatus, derive_status


class UsageEpisode(TrackedBase):
    """
    One clinical usage event for one patient.

    Contract:
        Owns its line items; deleting an episode deletes its line items and
        their return records.  Header fields (print info, billing) are
        mutable; quantities live on LineItem.
    """

    __tablename__ = "usage_episodes"

    __table_args__ = (
        Index("idx_episode_patient_hn", "patient_hn"),
        Index("idx_episode_en", "en"),
        Index("idx_episode_department", "department_code"),
        Index("idx_episode_usage_datetime", "usage_datetime"),
        Index("idx_episode_created_at", "created_at"),
    )

    hospital: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Episode number
    en: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Hospital number (patient identifier)
    patient_hn: Mapped[str] = mapped_column(String(50), nullable=False)

    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    department_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # When the supplies were used; reconciliation windows filter on this
    usage_datetime: Mapped[datetime] = mapped_column(nullable=False)

    usage_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    purpose: Mapped[str | None] = mapped_column(String(500), nullable=True)
    recorded_by_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Billing
    billing_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_subtotal: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    billing_tax: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    billing_total: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    billing_currency: Mapped[str] = mapped_column(String(3), default="THB", nullable=False)

    # Print metadata; twu is the patient's ward/location
    twu: Mapped[str | None] = mapped_column(String(100), nullable=True)
    print_location: Mapped[str | None] = mapped_column(String(100), nullable=True)
    print_date: Mapped[str | None] = mapped_column(String(20), nullable=True)
    time_print_date: Mapped[str | None] = mapped_column(String(20), nullable=True)
    print_update_stamp: Mapped[str | None] = mapped_column(String(50), nullable=True)

    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="episode",
        cascade="all, delete-orphan",
        order_by="LineItem.line_no",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<UsageEpisode {self.id} hn={self.patient_hn} en={self.en}>"


class LineItem(TrackedBase):
    """
    One dispensed supply item on an episode with its consumption counters.

    Contract:
        ``qty`` is fixed once consumption has been recorded.  The two
        counters only grow, and only through QuantityLifecycleService.

    Guarantees:
        - ``version`` increments on every UPDATE (compare-and-swap).
    """

    __tablename__ = "line_items"

    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_line_item_qty_nonneg"),
        CheckConstraint("qty_used_with_patient >= 0", name="ck_line_item_used_nonneg"),
        CheckConstraint(
            "qty_returned_to_cabinet >= 0", name="ck_line_item_returned_nonneg"
        ),
        CheckConstraint(
            "qty_used_with_patient + qty_returned_to_cabinet <= qty",
            name="ck_line_item_consumed_le_qty",
        ),
        Index("idx_line_item_episode", "episode_id"),
        Index("idx_line_item_code", "item_code"),
        Index("idx_line_item_status", "item_status"),
    )

    episode_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("usage_episodes.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Position of the line within its episode
    line_no: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    item_code: Mapped[str] = mapped_column(String(50), nullable=False)
    item_description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    assession_no: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Order status from the ordering system, e.g. "Verified" or "Discontinue"
    order_item_status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    uom: Mapped[str | None] = mapped_column(String(50), nullable=True)

    qty: Mapped[int] = mapped_column(BigInteger, nullable=False)
    qty_used_with_patient: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    qty_returned_to_cabinet: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )

    # Cached derivation of the three quantities
    item_status: Mapped[ItemStatus] = mapped_column(
        String(20),
        default=ItemStatus.PENDING.value,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    episode: Mapped["UsageEpisode"] = relationship(back_populates="line_items")

    return_records: Mapped[list["ReturnRecord"]] = relationship(  # noqa: F821
        back_populates="line_item",
        cascade="all, delete-orphan",
        order_by="ReturnRecord.return_datetime",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<LineItem {self.id} {self.item_code} qty={self.qty} "
            f"used={self.qty_used_with_patient} "
            f"returned={self.qty_returned_to_cabinet} status={self.item_status}>"
        )

    @property
    def qty_pending(self) -> int:
        return self.qty - self.qty_used_with_patient - self.qty_returned_to_cabinet

    @property
    def derived_status(self) -> ItemStatus:
        """Status implied by the current quantities."""
        return derive_status(
            self.qty, self.qty_used_with_patient, self.qty_returned_to_cabinet
        )
