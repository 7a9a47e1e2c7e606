"""
Pytest configuration: SQLite in-memory database, factories and an API
client with the DB dependency overridden.
"""

import os
import sys
from datetime import timedelta
from decimal import Decimal

import pytest

# Settings are read at import time; point them at SQLite BEFORE importing app modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RX_SIGNING_SECRET"] = "test-signing-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["NOTIFY_WEBHOOK_URL"] = ""

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.rbac import Actor, ROLE_ADMIN, ROLE_DOCTOR, ROLE_PHARMACIST  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.models.inventory import InventoryBatch, MovementType, StockMovement  # noqa: E402
from app.models.medicine import (  # noqa: E402
    ContraindicationSeverity,
    InteractionSeverity,
    Medicine,
    MedicineContraindication,
    MedicineIngredient,
    MedicineInteraction,
)
from app.models.patient import Patient, PatientAllergy, PatientCondition  # noqa: E402
from app.schemas.prescription import PrescriptionCreate, RxLineIn  # noqa: E402
from app.services import notifier  # noqa: E402
from app.utils.timezone import today_utc, utcnow  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def events():
    """Captures every notify() call made during the test."""
    captured = []

    def _capture(event):
        captured.append(event)

    notifier.register_channel(_capture)
    yield captured
    notifier.unregister_channel(_capture)


# -------------------------
# Actors
# -------------------------
@pytest.fixture()
def doctor():
    return Actor(subject_id="dr-001", role=ROLE_DOCTOR)


@pytest.fixture()
def other_doctor():
    return Actor(subject_id="dr-002", role=ROLE_DOCTOR)


@pytest.fixture()
def pharmacist():
    return Actor(subject_id="ph-001", role=ROLE_PHARMACIST)


@pytest.fixture()
def admin():
    return Actor(subject_id="admin-001", role=ROLE_ADMIN)


# -------------------------
# Factories
# -------------------------
@pytest.fixture()
def make_medicine(db):
    counter = {"n": 0}

    def _make(name="Paracetamol", *, ingredients=None, contraindications=None,
              reorder_level=0, minimum_stock=0, unit_price="1.00", **kw):
        counter["n"] += 1
        med = Medicine(
            code=f"MED{counter['n']:06d}",
            name=name,
            generic_name=kw.pop("generic_name", name),
            strength=kw.pop("strength", "500 mg"),
            dosage_form=kw.pop("dosage_form", "Tablet"),
            reorder_level=reorder_level,
            minimum_stock=minimum_stock,
            unit_price=Decimal(unit_price),
            **kw,
        )
        for ing in (ingredients if ingredients is not None else [(name, "")]):
            ing_name, ing_class = ing if isinstance(ing, tuple) else (ing, "")
            med.ingredients.append(MedicineIngredient(name=ing_name, ingredient_class=ing_class))
        for cond in contraindications or []:
            med.contraindications.append(
                MedicineContraindication(condition=cond, severity=ContraindicationSeverity.ABSOLUTE))
        db.add(med)
        db.commit()
        db.refresh(med)
        return med

    return _make


@pytest.fixture()
def make_batch(db):
    counter = {"n": 0}

    def _make(medicine, quantity, *, expires_in_days=180, unit_cost="1.00", **kw):
        counter["n"] += 1
        batch = InventoryBatch(
            medicine_id=medicine.id,
            batch_no=kw.pop("batch_no", f"B{counter['n']:04d}"),
            expiry_date=today_utc() + timedelta(days=expires_in_days),
            on_hand_qty=quantity,
            reserved_qty=0,
            unit_cost=Decimal(unit_cost),
            received_at=utcnow() + timedelta(microseconds=counter["n"]),
            **kw,
        )
        db.add(batch)
        db.flush()
        db.add(
            StockMovement(
                batch_id=batch.id,
                medicine_id=medicine.id,
                movement_type=MovementType.RECEIVED,
                quantity_change=quantity,
                balance_after=quantity,
            ))
        db.commit()
        db.refresh(batch)
        return batch

    return _make


@pytest.fixture()
def make_interaction(db):
    def _make(med_a, med_b, severity=InteractionSeverity.MAJOR, description="", management=""):
        a, b = sorted((med_a.id, med_b.id))
        row = MedicineInteraction(
            medicine_a_id=a,
            medicine_b_id=b,
            severity=severity,
            description=description,
            management=management,
        )
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture()
def make_patient(db):
    counter = {"n": 0}

    def _make(*, allergens=(), conditions=()):
        counter["n"] += 1
        p = Patient(uhid=f"UH{counter['n']:05d}", full_name=f"Patient {counter['n']}")
        for a in allergens:
            p.allergies.append(PatientAllergy(allergen=a))
        for c in conditions:
            p.conditions.append(PatientCondition(condition=c))
        db.add(p)
        db.commit()
        db.refresh(p)
        return p

    return _make


@pytest.fixture()
def rx_request():
    def _make(patient, *lines, validity_days=None):
        """lines: (medicine, quantity) or (medicine, quantity, refills_allowed)"""
        items = []
        for item in lines:
            med, qty = item[0], item[1]
            refills = item[2] if len(item) > 2 else 0
            items.append(RxLineIn(medicine_id=med.id, dosage="1 tab", quantity=qty,
                                  refills_allowed=refills, frequency="BD"))
        return PrescriptionCreate(patient_id=patient.id, lines=items, validity_days=validity_days)

    return _make
