# FILE: app/services/patient_records.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from sqlalchemy.orm import Session, selectinload

from app.core.exceptions import NotFound
from app.models.patient import Patient


@dataclass
class PatientProfile:
    patient_id: int
    patient_ref: str
    allergens: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)


def get_profile(db: Session, patient_id: int) -> PatientProfile:
    """
    Allergens and active conditions the prescribing checks run against.
    """
    patient = (db.query(Patient).options(
        selectinload(Patient.allergies),
        selectinload(Patient.conditions),
    ).filter(Patient.id == patient_id).first())
    if not patient or not patient.is_active:
        raise NotFound(f"Patient {patient_id} not found.")

    return PatientProfile(
        patient_id=patient.id,
        patient_ref=patient.uhid,
        allergens=[a.allergen for a in patient.allergies if (a.allergen or "").strip()],
        conditions=[
            c.condition for c in patient.conditions
            if c.is_active and (c.condition or "").strip()
        ],
    )
