# FILE: app/models/prescription.py
from __future__ import annotations

import enum
from decimal import Decimal
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Date,
    Numeric,
    ForeignKey,
    Enum,
    JSON,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow


class RxStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class RxLineStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Lifecycle states a prescription can still be dispensed / cancelled from
OPEN_STATUSES = frozenset({RxStatus.ACTIVE, RxStatus.PARTIALLY_FILLED})
TERMINAL_STATUSES = frozenset(
    {RxStatus.COMPLETED, RxStatus.CANCELLED, RxStatus.EXPIRED})


class Prescription(Base):
    """
    Signed prescription header.

    status:
      DRAFT -> ACTIVE -> PARTIALLY_FILLED -> COMPLETED
      ACTIVE / PARTIALLY_FILLED -> CANCELLED | EXPIRED

    credential_payload is the canonical JSON that `signature` was
    computed over; both are frozen once the prescription is ACTIVE.
    """

    __tablename__ = "rx_prescriptions"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)
    prescription_number = Column(String(64),
                                 unique=True,
                                 index=True,
                                 nullable=False)

    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    prescriber_id = Column(String(64), nullable=False, index=True)

    status = Column(Enum(RxStatus, name="rx_status"), nullable=False, default=RxStatus.DRAFT)
    diagnosis = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    issued_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    valid_until = Column(DateTime, nullable=False, index=True)

    credential_payload = Column(Text, nullable=True)
    signature = Column(String(64), unique=True, nullable=True, index=True)

    # Minor / moderate interaction warnings accepted at issue time
    interaction_warnings = Column(JSON, nullable=False, default=list)

    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by_id = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    # --- Relationships ---
    lines = relationship(
        "PrescriptionLine",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionLine.line_no",
    )
    dispense_events = relationship(
        "DispenseEvent",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="DispenseEvent.id",
    )
    patient = relationship("Patient")


class PrescriptionLine(Base):
    """
    One medicine on a prescription.

    quantity is per fill. refills_allowed counts repeats after the first
    fill, so a line may be dispensed refills_allowed + 1 times;
    refills_remaining counts the dispense events still permitted.
    """

    __tablename__ = "rx_prescription_lines"
    __table_args__ = (
        UniqueConstraint("prescription_id", "medicine_id", name="uq_rx_line_medicine"),
        CheckConstraint("quantity > 0", name="ck_rx_line_qty_pos"),
        CheckConstraint("refills_allowed >= 0", name="ck_rx_line_refills_nonneg"),
        CheckConstraint("refills_remaining >= 0", name="ck_rx_line_refills_remaining_nonneg"),
    )

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("rx_prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_no = Column(Integer, nullable=False, default=1)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False)

    # Dosing
    dosage = Column(String(64), nullable=False)  # "1 tab", "5 ml"
    frequency = Column(String(32), nullable=True)  # BD, TDS, 1-0-1
    route = Column(String(32), nullable=True)  # oral, IV, IM, topical
    duration_days = Column(Integer, nullable=True)
    instructions = Column(Text, nullable=True)

    quantity = Column(Integer, nullable=False)
    refills_allowed = Column(Integer, nullable=False, default=0)
    refills_remaining = Column(Integer, nullable=False, default=1)
    dispensed_qty = Column(Integer, nullable=False, default=0)

    status = Column(Enum(RxLineStatus, name="rx_line_status"), nullable=False, default=RxLineStatus.ACTIVE)

    prescription = relationship("Prescription", back_populates="lines")
    medicine = relationship("Medicine")

    @property
    def total_authorized_qty(self) -> int:
        return int(self.quantity) * (int(self.refills_allowed) + 1)


class DispenseEvent(Base):
    """
    One pharmacist hand-over against a prescription. Immutable once written.
    """

    __tablename__ = "rx_dispense_events"

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("rx_prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pharmacist_id = Column(String(64), nullable=False)
    dispensed_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    notes = Column(Text, nullable=True)
    total_cost = Column(Numeric(14, 2), nullable=False, default=Decimal("0"))

    prescription = relationship("Prescription", back_populates="dispense_events")
    lines = relationship(
        "DispenseEventLine",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="DispenseEventLine.id",
    )


class DispenseEventLine(Base):
    """
    Per-batch slice of a dispense. Batch number / expiry are snapshotted
    so the record survives batch edits.
    """

    __tablename__ = "rx_dispense_event_lines"

    id = Column(Integer, primary_key=True)
    dispense_event_id = Column(
        Integer,
        ForeignKey("rx_dispense_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    prescription_line_id = Column(Integer, ForeignKey("rx_prescription_lines.id"), nullable=False)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("inv_batches.id"), nullable=False)

    batch_no = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    line_cost = Column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    refills_remaining_after = Column(Integer, nullable=False)

    event = relationship("DispenseEvent", back_populates="lines")
    prescription_line = relationship("PrescriptionLine")
    batch = relationship("InventoryBatch")
