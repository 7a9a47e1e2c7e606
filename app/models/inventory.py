# FILE: app/models/inventory.py
from __future__ import annotations

import enum
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Numeric, ForeignKey, Enum,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow


# -------------------------
# Enums
# -------------------------
class BatchStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    RECALLED = "RECALLED"
    QUARANTINED = "QUARANTINED"


class MovementType(str, enum.Enum):
    RECEIVED = "RECEIVED"
    DISPENSED = "DISPENSED"
    ADJUSTED = "ADJUSTED"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    RECALLED = "RECALLED"
    QUARANTINED = "QUARANTINED"


class ReservationStatus(str, enum.Enum):
    RESERVED = "RESERVED"
    CONSUMED = "CONSUMED"
    RELEASED = "RELEASED"


# -------------------------
# Batches
# -------------------------
class InventoryBatch(Base):
    """
    One received lot of one medicine.

    available = on_hand_qty - reserved_qty (derived, never stored).
    `version` is an optimistic lock: a stale concurrent write raises
    StaleDataError at flush instead of silently overwriting stock.
    """
    __tablename__ = "inv_batches"
    __table_args__ = (
        UniqueConstraint("medicine_id", "batch_no", name="uq_inv_batch_medicine_batch_no"),
        Index("ix_inv_batch_medicine_expiry", "medicine_id", "expiry_date"),
        CheckConstraint("on_hand_qty >= 0", name="ck_inv_batch_on_hand_nonneg"),
        CheckConstraint("reserved_qty >= 0", name="ck_inv_batch_reserved_nonneg"),
        CheckConstraint("reserved_qty <= on_hand_qty", name="ck_inv_batch_reserved_le_on_hand"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)

    batch_no = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=False)

    on_hand_qty = Column(Integer, nullable=False, default=0)
    reserved_qty = Column(Integer, nullable=False, default=0)

    unit_cost = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    supplier = Column(String(255), nullable=False, default="")
    manufacturer = Column(String(255), nullable=False, default="")

    status = Column(Enum(BatchStatus, name="inv_batch_status"), nullable=False, default=BatchStatus.ACTIVE)

    received_at = Column(DateTime, default=utcnow, nullable=False)
    received_by_id = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    medicine = relationship("Medicine", back_populates="batches")
    movements = relationship(
        "StockMovement",
        back_populates="batch",
        order_by="StockMovement.id",
    )

    @property
    def available_qty(self) -> int:
        return int(self.on_hand_qty or 0) - int(self.reserved_qty or 0)


class StockMovement(Base):
    """
    Append-only ledger of on-hand changes for a batch.
    quantity_change is signed: +IN / -OUT.
    """
    __tablename__ = "inv_stock_movements"
    __table_args__ = (
        Index("ix_inv_movement_batch_time", "batch_id", "moved_at"),
        Index("ix_inv_movement_medicine_time", "medicine_id", "moved_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("inv_batches.id"), nullable=False, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False)

    movement_type = Column(Enum(MovementType, name="inv_movement_type"), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    moved_at = Column(DateTime, default=utcnow, nullable=False)
    actor_id = Column(String(64), nullable=True)

    # No FK: the ledger must outlive any reference it mentions
    prescription_id = Column(Integer, nullable=True, index=True)
    dispense_event_id = Column(Integer, nullable=True, index=True)
    reservation_id = Column(Integer, nullable=True)

    notes = Column(String(1000), nullable=False, default="")

    batch = relationship("InventoryBatch", back_populates="movements")


# -------------------------
# Reservations (two-phase reserve / consume)
# -------------------------
class StockReservation(Base):
    __tablename__ = "inv_reservations"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(36), unique=True, nullable=False, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    status = Column(
        Enum(ReservationStatus, name="inv_reservation_status"),
        nullable=False,
        default=ReservationStatus.RESERVED,
    )
    reference = Column(String(100), nullable=False, default="")  # e.g. RX-20261019-0001
    actor_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    lines = relationship(
        "StockReservationLine",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="StockReservationLine.id",
    )


class StockReservationLine(Base):
    __tablename__ = "inv_reservation_lines"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_inv_reservation_line_qty_pos"),
    )

    id = Column(Integer, primary_key=True)
    reservation_id = Column(Integer, ForeignKey("inv_reservations.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("inv_batches.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    reservation = relationship("StockReservation", back_populates="lines")
    batch = relationship("InventoryBatch")
