# FILE: app/models/patient.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    func,
    ForeignKey,
)
from sqlalchemy.orm import relationship

from app.db.base import Base


class Patient(Base):
    """
    Minimal slice of the patient record that prescribing needs:
    identity reference plus recorded allergies and chronic conditions.
    """
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    uhid = Column(String(32), unique=True, index=True, nullable=False)
    full_name = Column(String(240), nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    allergies = relationship(
        "PatientAllergy",
        back_populates="patient",
        cascade="all, delete-orphan",
    )
    conditions = relationship(
        "PatientCondition",
        back_populates="patient",
        cascade="all, delete-orphan",
    )


class PatientAllergy(Base):
    __tablename__ = "patient_allergies"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    allergen = Column(String(255), nullable=False)
    reaction = Column(String(255), nullable=True)
    severity = Column(String(32), nullable=True)  # Mild / Moderate / Severe / Life-threatening

    patient = relationship("Patient", back_populates="allergies")


class PatientCondition(Base):
    __tablename__ = "patient_conditions"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    condition = Column(String(255), nullable=False)
    icd_code = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    patient = relationship("Patient", back_populates="conditions")
