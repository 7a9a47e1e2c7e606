# app/db/init_db.py
from __future__ import annotations

import argparse
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.base import Base
from app.db.session import engine
from app.models.inventory import InventoryBatch, MovementType, StockMovement
from app.models.medicine import (
    ContraindicationSeverity,
    InteractionSeverity,
    Medicine,
    MedicineContraindication,
    MedicineIngredient,
    MedicineInteraction,
)
from app.models.patient import Patient, PatientAllergy, PatientCondition
from app.utils.timezone import today_utc, utcnow


def print_tables(conn):
    names = sorted(inspect(conn).get_table_names())
    print("Existing tables:", names)
    return set(names)


# (code, name, generic, strength, form, class, ingredients[(name, class)],
#  contraindications[condition], reorder, minimum, price)
DEMO_MEDICINES = [
    ("MED000001", "Amoxil", "Amoxicillin", "500 mg", "Capsule", "Antibiotic",
     [("Amoxicillin", "Penicillin")], [], 50, 10, "4.50"),
    ("MED000002", "Coumadin", "Warfarin", "5 mg", "Tablet", "Anticoagulant",
     [("Warfarin", "Coumarin")], ["Active bleeding", "Pregnancy"], 30, 5, "2.10"),
    ("MED000003", "Disprin", "Aspirin", "75 mg", "Tablet", "Antiplatelet",
     [("Acetylsalicylic acid", "Salicylate")], ["Peptic ulcer"], 100, 20, "0.40"),
    ("MED000004", "Brufen", "Ibuprofen", "400 mg", "Tablet", "NSAID",
     [("Ibuprofen", "NSAID")], ["Chronic kidney disease"], 80, 15, "0.90"),
    ("MED000005", "Calpol", "Paracetamol", "500 mg", "Tablet", "Analgesic",
     [("Paracetamol", "Anilide")], [], 200, 40, "0.25"),
]

# (code_a, code_b, severity, description, management)
DEMO_INTERACTIONS = [
    ("MED000002", "MED000003", InteractionSeverity.MAJOR,
     "Increased bleeding risk", "Avoid combination or monitor INR closely"),
    ("MED000003", "MED000004", InteractionSeverity.MODERATE,
     "Ibuprofen may reduce the antiplatelet effect of aspirin",
     "Give aspirin at least 30 minutes before ibuprofen"),
]


def seed_demo(db: Session) -> None:
    """
    Demo catalog, one batch per medicine and a patient with a penicillin
    allergy. Skips anything already present; safe to run multiple times.
    """
    today = today_utc()
    by_code = {}
    for (code, name, generic, strength, form, drug_class, ingredients,
         contraindications, reorder, minimum, price) in DEMO_MEDICINES:
        med = db.query(Medicine).filter(Medicine.code == code).first()
        if med is None:
            med = Medicine(
                code=code,
                name=name,
                generic_name=generic,
                brand_name=name,
                strength=strength,
                dosage_form=form,
                drug_class=drug_class,
                reorder_level=reorder,
                minimum_stock=minimum,
                unit_price=Decimal(price),
            )
            for ing_name, ing_class in ingredients:
                med.ingredients.append(MedicineIngredient(name=ing_name, ingredient_class=ing_class))
            for cond in contraindications:
                med.contraindications.append(
                    MedicineContraindication(condition=cond, severity=ContraindicationSeverity.ABSOLUTE))
            db.add(med)
            db.flush()

            batch = InventoryBatch(
                medicine_id=med.id,
                batch_no=f"DEMO-{code}",
                expiry_date=today + timedelta(days=365),
                on_hand_qty=reorder * 3,
                reserved_qty=0,
                unit_cost=Decimal(price),
                supplier="Demo Supplier",
                received_at=utcnow(),
            )
            db.add(batch)
            db.flush()
            db.add(
                StockMovement(
                    batch_id=batch.id,
                    medicine_id=med.id,
                    movement_type=MovementType.RECEIVED,
                    quantity_change=batch.on_hand_qty,
                    balance_after=batch.on_hand_qty,
                    notes="Demo seed",
                ))
        by_code[code] = med

    for code_a, code_b, severity, desc, mgmt in DEMO_INTERACTIONS:
        a, b = sorted((by_code[code_a].id, by_code[code_b].id))
        exists = (db.query(MedicineInteraction).filter(
            MedicineInteraction.medicine_a_id == a,
            MedicineInteraction.medicine_b_id == b,
        ).first())
        if not exists:
            db.add(
                MedicineInteraction(
                    medicine_a_id=a,
                    medicine_b_id=b,
                    severity=severity,
                    description=desc,
                    management=mgmt,
                ))

    if not db.query(Patient).filter(Patient.uhid == "DEMO0001").first():
        p = Patient(uhid="DEMO0001", full_name="Demo Patient")
        p.allergies.append(PatientAllergy(allergen="Penicillin", reaction="Rash", severity="Moderate"))
        p.conditions.append(PatientCondition(condition="Hypertension", icd_code="I10"))
        db.add(p)


def run(fresh: bool = False, demo: bool = False) -> None:
    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")
        Base.metadata.drop_all(bind=engine)

    print("Creating all missing tables …")
    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        print_tables(conn)

    if not demo:
        return
    try:
        with Session(engine) as db:
            seed_demo(db)
            db.commit()
            print("Demo catalog seeded.")
    except SQLAlchemyError as e:
        print("Seeding failed:", e)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, optionally seed a demo catalog).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Seed demo medicines, stock and a demo patient.",
    )
    args = parser.parse_args()
    run(fresh=args.fresh, demo=args.demo)
