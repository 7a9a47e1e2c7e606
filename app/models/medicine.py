# FILE: app/models/medicine.py
from __future__ import annotations

import enum
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Text,
    Enum, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow


# -------------------------
# Enums
# -------------------------
class MedicineStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DISCONTINUED = "DISCONTINUED"
    RECALLED = "RECALLED"
    SHORTAGE = "SHORTAGE"


class InteractionSeverity(str, enum.Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    MAJOR = "MAJOR"
    CONTRAINDICATED = "CONTRAINDICATED"


class ContraindicationSeverity(str, enum.Enum):
    ABSOLUTE = "ABSOLUTE"
    RELATIVE = "RELATIVE"


# Interactions at or above this level block prescription creation
BLOCKING_SEVERITIES = frozenset(
    {InteractionSeverity.MAJOR, InteractionSeverity.CONTRAINDICATED})


# -------------------------
# Catalog
# -------------------------
class Medicine(Base):
    __tablename__ = "medicines"
    __table_args__ = (
        Index("ix_medicines_generic_name", "generic_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False, index=True)  # MED000001 / CTL000001
    name = Column(String(255), nullable=False, index=True)
    generic_name = Column(String(255), nullable=False, default="")
    brand_name = Column(String(255), default="")

    strength = Column(String(50), nullable=False, default="")  # "500 mg"
    dosage_form = Column(String(50), nullable=False, default="")  # Tablet / Syrup ...
    drug_class = Column(String(100), default="")
    unit = Column(String(50), default="unit")

    is_controlled = Column(Boolean, default=False, nullable=False)
    status = Column(Enum(MedicineStatus, name="medicine_status"), nullable=False, default=MedicineStatus.ACTIVE)

    unit_price = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    # Low-stock thresholds on total available units across batches
    reorder_level = Column(Integer, nullable=False, default=0)
    minimum_stock = Column(Integer, nullable=False, default=0)

    created_by_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    ingredients = relationship(
        "MedicineIngredient",
        back_populates="medicine",
        cascade="all, delete-orphan",
        order_by="MedicineIngredient.id",
    )
    contraindications = relationship(
        "MedicineContraindication",
        back_populates="medicine",
        cascade="all, delete-orphan",
        order_by="MedicineContraindication.id",
    )
    batches = relationship("InventoryBatch", back_populates="medicine")

    @property
    def display_name(self) -> str:
        if self.brand_name:
            return f"{self.brand_name} ({self.generic_name})"
        return self.generic_name or self.name


class MedicineIngredient(Base):
    """
    Active ingredient. `ingredient_class` carries the allergy family
    (e.g. amoxicillin -> penicillin) so class-level allergens match too.
    """
    __tablename__ = "medicine_ingredients"
    __table_args__ = (
        UniqueConstraint("medicine_id", "name", name="uq_medicine_ingredient"),
    )

    id = Column(Integer, primary_key=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    ingredient_class = Column(String(255), nullable=False, default="")

    medicine = relationship("Medicine", back_populates="ingredients")


class MedicineContraindication(Base):
    __tablename__ = "medicine_contraindications"

    id = Column(Integer, primary_key=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False, index=True)
    condition = Column(String(255), nullable=False)
    severity = Column(
        Enum(ContraindicationSeverity, name="contraindication_severity"),
        nullable=False,
        default=ContraindicationSeverity.ABSOLUTE,
    )
    description = Column(String(1000), default="")

    medicine = relationship("Medicine", back_populates="contraindications")


class MedicineInteraction(Base):
    """
    One row per unordered pair: medicine_a_id < medicine_b_id always,
    so a lookup from either side finds the same record.
    """
    __tablename__ = "medicine_interactions"
    __table_args__ = (
        UniqueConstraint("medicine_a_id", "medicine_b_id", name="uq_medicine_interaction_pair"),
        CheckConstraint("medicine_a_id < medicine_b_id", name="ck_medicine_interaction_ordered"),
        Index("ix_medicine_interaction_b", "medicine_b_id"),
    )

    id = Column(Integer, primary_key=True)
    medicine_a_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False, index=True)
    medicine_b_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False)

    severity = Column(Enum(InteractionSeverity, name="interaction_severity"), nullable=False)
    description = Column(Text, nullable=False, default="")
    management = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, default=utcnow, nullable=False)

    medicine_a = relationship("Medicine", foreign_keys=[medicine_a_id])
    medicine_b = relationship("Medicine", foreign_keys=[medicine_b_id])
